"""Account-linking provider client and linked-account readiness."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

import httpx

from .auth.session import AccessSession
from .config import AccountsConfig, ReadinessConfig
from .persistence.models import LinkedAccount
from .persistence.repository import CadenceRepository
from .readiness import (
    CheckResult,
    CheckStatus,
    ReadinessCancelled,
    ReadinessCheck,
    ReadinessHardError,
    ReadinessOutcome,
    ReadinessVerifier,
    RetrySchedule,
)

logger = logging.getLogger(__name__)

# Account types the provider reports for each integration.
PROVIDER_ACCOUNT_TYPES: Dict[str, frozenset] = {
    "gmail": frozenset({"GOOGLE", "GOOGLE_OAUTH", "GMAIL", "MAIL"}),
    "linkedin": frozenset({"LINKEDIN"}),
}

PROVIDER_AUTH_NAMES: Dict[str, str] = {
    "gmail": "GOOGLE",
    "linkedin": "LINKEDIN",
}

CHANNEL_PROVIDERS: Dict[str, str] = {
    "email": "gmail",
    "linkedin": "linkedin",
}

_ACTIVE_STATES = {"OK", "ACTIVE", "CONNECTED", "RUNNING"}


def _is_active(item: Dict[str, Any]) -> bool:
    status = item.get("status")
    if status is None:
        sources = item.get("sources") or []
        status = sources[0].get("status") if sources else "OK"
    return str(status).upper() in _ACTIVE_STATES


class AccountLinkClient:
    """Minimal HTTP client for the account-linking provider."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"X-API-KEY": api_key, "accept": "application/json"}

    @classmethod
    def from_config(
        cls, config: AccountsConfig, client: Optional[httpx.AsyncClient] = None
    ) -> "AccountLinkClient":
        if not config.base_url or not config.api_key:
            raise ValueError("accounts.base_url and accounts.api_key must be configured")
        return cls(config.base_url, config.api_key, client=client)

    async def create_auth_link(
        self,
        owner_id: str,
        provider: str,
        success_redirect_url: Optional[str] = None,
        failure_redirect_url: Optional[str] = None,
        notify_url: Optional[str] = None,
        expires_in: timedelta = timedelta(hours=24),
    ) -> str:
        """Return a hosted URL where the owner authorizes ``provider``."""
        expires_on = datetime.now(timezone.utc) + expires_in
        payload: Dict[str, Any] = {
            "type": "create",
            "providers": [PROVIDER_AUTH_NAMES.get(provider, provider.upper())],
            "api_url": self.base_url,
            "expiresOn": expires_on.isoformat().replace("+00:00", "Z"),
            "name": owner_id,
        }
        if success_redirect_url:
            payload["success_redirect_url"] = success_redirect_url
        if failure_redirect_url:
            payload["failure_redirect_url"] = failure_redirect_url
        if notify_url:
            payload["notify_url"] = notify_url
        resp = await self._client.post(
            f"{self.base_url}/api/v1/hosted/accounts/link",
            json=payload,
            headers=self._headers,
        )
        resp.raise_for_status()
        url = resp.json().get("url")
        if not url:
            raise ValueError("Provider response did not contain an auth link")
        logger.info(f"Created {provider} auth link for owner {owner_id}")
        return url

    async def list_accounts(self) -> List[Dict[str, Any]]:
        resp = await self._client.get(
            f"{self.base_url}/api/v1/accounts", headers=self._headers
        )
        resp.raise_for_status()
        return list(resp.json().get("items") or [])

    def account_check(self, provider: str) -> ReadinessCheck:
        """Readiness check that looks for an active ``provider`` account."""
        types = PROVIDER_ACCOUNT_TYPES.get(provider, frozenset({provider.upper()}))

        async def check() -> CheckResult:
            try:
                items = await self.list_accounts()
            except httpx.HTTPStatusError as exc:
                code = exc.response.status_code
                if code in (401, 403):
                    return CheckResult(
                        status=CheckStatus.HARD_ERROR,
                        detail=f"provider rejected credentials ({code})",
                    )
                return CheckResult(
                    status=CheckStatus.NOT_READY, detail=f"provider returned {code}"
                )
            except httpx.TransportError as exc:
                return CheckResult(status=CheckStatus.NOT_READY, detail=str(exc))

            for item in items:
                if str(item.get("type", "")).upper() in types and _is_active(item):
                    return CheckResult(
                        status=CheckStatus.READY,
                        data={"account_id": item.get("id")},
                    )
            return CheckResult(status=CheckStatus.NOT_READY)

        return check

    async def aclose(self) -> None:
        await self._client.aclose()


class AccountLinker:
    """Confirm provider accounts after an OAuth callback and gate channels on them."""

    def __init__(
        self,
        repository: CadenceRepository,
        client: AccountLinkClient,
        config: Optional[ReadinessConfig] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.config = config or ReadinessConfig()
        self._clock = clock
        self._sleep = sleep

    def _verifier(self, provider: str) -> ReadinessVerifier:
        kwargs: Dict[str, Any] = {"check_timeout": self.config.check_timeout}
        if self._clock is not None:
            kwargs["clock"] = self._clock
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return ReadinessVerifier(RetrySchedule.named(provider, self.config), **kwargs)

    async def handle_callback(
        self,
        owner_id: str,
        provider: str,
        callback_status: Literal["success", "failed", "cancelled"],
        session: AccessSession,
    ) -> ReadinessOutcome:
        """Process the one-shot result the provider redirected back with."""
        if callback_status != "success":
            logger.warning(
                f"{provider} linking for owner {owner_id} ended with '{callback_status}'"
            )
            return ReadinessHardError(
                attempts=0, elapsed=0.0, error=f"account linking {callback_status}"
            )

        outcome = await self._verifier(provider).verify(
            self.client.account_check(provider), is_active=session.is_active
        )
        if outcome.kind != "ready":
            logger.info(f"{provider} account for owner {owner_id} not confirmed: {outcome.kind}")
            return outcome
        if not session.is_active():
            logger.info(f"Discarding {provider} confirmation; session of {owner_id} ended")
            return ReadinessCancelled(attempts=outcome.attempts, elapsed=outcome.elapsed)

        now = datetime.now(timezone.utc)
        await self.repository.save_linked_account(
            LinkedAccount(
                owner_id=owner_id,
                provider=provider,
                account_id=outcome.data.get("account_id"),
                status="active",
                connected_at=now,
                updated_at=now,
            )
        )
        logger.info(f"Linked {provider} account for owner {owner_id}")
        return outcome

    async def channel_ready(self, owner_id: str, channel: Optional[str]) -> bool:
        provider = CHANNEL_PROVIDERS.get(channel or "")
        if provider is None:
            return True
        account = await self.repository.get_linked_account(owner_id, provider)
        return account is not None and account.status == "active"
