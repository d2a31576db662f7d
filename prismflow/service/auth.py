from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from prismflow.logging import get_logger
from prismflow.service.accounts import AccountService
from prismflow.service.csrf import CsrfProtector
from prismflow.service.errors import (
    InvalidCredentialError,
    SecondFactorInvalidError,
    SecondFactorRequiredError,
)
from prismflow.service.mfa import SecondFactorService
from prismflow.service.tokens import TokenPair, TokenService
from prismflow.storage.models import Account

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    account: Account
    tokens: TokenPair
    csrf_token: str


class AuthService:
    """Login, refresh and logout flows.

    Login walks ``Unauthenticated -> SecondFactorRequired -> Authenticated``:
    a correct password for an account with an enabled second factor but no
    code yields ``SecondFactorRequiredError``; the client resubmits with the
    code. Every failure before that point is the same ``InvalidCredentialError``.
    """

    def __init__(
        self,
        accounts: AccountService,
        tokens: TokenService,
        mfa: SecondFactorService,
        csrf: CsrfProtector,
    ) -> None:
        self.accounts = accounts
        self.tokens = tokens
        self.mfa = mfa
        self.csrf = csrf
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def start_session(self, account: Account) -> LoginResult:
        """Record the login and issue tokens for an already-authenticated account."""
        self.accounts.store.touch_last_login(account.id, self._now())
        pair = await self.tokens.issue_session(account)
        return LoginResult(account=account, tokens=pair, csrf_token=self.csrf.issue(account.id))

    async def login(
        self, email: str, password: str, mfa_code: Optional[str] = None
    ) -> LoginResult:
        account = self.accounts.authenticate(email, password)
        if account is None:
            self.logger.info("login_failed")
            raise InvalidCredentialError("invalid email or password")
        if await self.mfa.is_enabled(account):
            if not mfa_code:
                raise SecondFactorRequiredError(account_id=account.id)
            if not await self.mfa.verify(account, mfa_code):
                self.logger.info("login_second_factor_rejected", account_id=account.id)
                raise SecondFactorInvalidError("invalid second factor code")
        result = await self.start_session(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return result

    async def refresh(self, refresh_token: str) -> LoginResult:
        account, pair = await self.tokens.refresh(refresh_token)
        return LoginResult(account=account, tokens=pair, csrf_token=self.csrf.issue(account.id))

    async def logout(self, account_id: str, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        return await self.tokens.revoke(refresh_token, account_id=account_id)

    async def logout_all(self, account_id: str) -> int:
        return await self.tokens.revoke_all(account_id)
