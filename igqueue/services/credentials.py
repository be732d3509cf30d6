from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import AccountNotFound, CredentialExpired, StoreUnavailable
from ..logging_setup import log_event
from ..models import BusinessAccount, InstagramCredential

@dataclass(frozen=True)
class Credentials:
    external_user_id: str  # instagram_business_id, the Graph API node we act as
    access_token: str
    owning_user_id: str

def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt

class CredentialResolver:
    """
    Maps a business account to the page token used against the Graph API.

    Results are cached on the instance, so build one per request or sweep tick
    instead of sharing it process-wide.
    """

    def __init__(self, db_factory: Callable[[], Session], now: Callable[[], datetime] | None = None):
        self.db_factory = db_factory
        self.now = now or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, Credentials] = {}

    def resolve(self, business_account_id: str) -> Credentials:
        cached = self._cache.get(business_account_id)
        if cached is not None:
            return cached

        db = self.db_factory()
        try:
            account = db.get(BusinessAccount, business_account_id)
            if not account:
                raise AccountNotFound(business_account_id, f"Business account not found: {business_account_id}")
            if not account.is_connected:
                raise AccountNotFound(business_account_id, "Business account is disconnected")

            stmt = (
                select(InstagramCredential)
                .where(InstagramCredential.business_account_id == business_account_id)
                .where(InstagramCredential.user_id == account.user_id)
                .where(InstagramCredential.token_type == "page")
                .where(InstagramCredential.is_active.is_(True))
                .order_by(InstagramCredential.id.desc())
            )
            cred = db.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"credential lookup failed: {e}") from e
        finally:
            db.close()

        if not cred or not cred.access_token:
            raise CredentialExpired(
                business_account_id,
                "No page token found. User must complete OAuth flow and token exchange first.",
            )
        if cred.expires_at is not None and _as_utc(cred.expires_at) < self.now():
            log_event("credential_expired", level="warning", business_account_id=business_account_id, expired_at=cred.expires_at.isoformat())
            raise CredentialExpired(
                business_account_id,
                f"Page token expired on {cred.expires_at.isoformat()}. User must reconnect their Instagram account.",
            )

        creds = Credentials(
            external_user_id=account.instagram_business_id,
            access_token=cred.access_token,
            owning_user_id=account.user_id,
        )
        self._cache[business_account_id] = creds
        return creds

    def forget(self, business_account_id: str) -> None:
        self._cache.pop(business_account_id, None)
