from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from salesbot.config import Settings
from salesbot.logging_config import get_logger
from salesbot.models import TransportSettings

logger = get_logger("settings_service")


@dataclass(frozen=True)
class WhatsAppCredentials:
    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    verify_token: Optional[str] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    business_account_id: Optional[str] = None

    @property
    def can_send(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def public_view(self) -> dict:
        """Fields safe to show on the dashboard. Secrets are never echoed back."""
        return {
            "phoneNumberId": self.phone_number_id or "",
            "businessAccountId": self.business_account_id or "",
            "appId": self.app_id or "",
            "verifyToken": self.verify_token or "",
        }


CREDENTIAL_FIELDS = tuple(f.name for f in fields(WhatsAppCredentials))


class TransportSettingsStore:
    """Environment defaults overlaid with values saved from the dashboard."""

    def __init__(self, settings: Settings, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory
        self._defaults = WhatsAppCredentials(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            verify_token=settings.whatsapp_verify_token,
            app_id=settings.whatsapp_app_id,
            app_secret=settings.whatsapp_app_secret,
            business_account_id=settings.whatsapp_business_account_id,
        )
        self._current = self._defaults

    def current(self) -> WhatsAppCredentials:
        return self._current

    def load(self) -> WhatsAppCredentials:
        if self._session_factory is None:
            return self._current
        db = self._session_factory()
        try:
            row = db.get(TransportSettings, 1)
            if row is not None:
                self._current = self._overlay(self._defaults, {name: getattr(row, name) for name in CREDENTIAL_FIELDS})
                logger.info("Transport settings loaded")
        except Exception as exc:
            logger.error("Transport settings load failed, using defaults", extra={"context": {"error": str(exc)}})
        finally:
            db.close()
        return self._current

    def update(self, **values: Optional[str]) -> WhatsAppCredentials:
        """Merge non-empty values into the saved settings."""
        updated = self._overlay(self._current, values)
        if self._session_factory is not None:
            db = self._session_factory()
            try:
                row = db.get(TransportSettings, 1)
                if row is None:
                    row = TransportSettings(id=1)
                    db.add(row)
                for name in CREDENTIAL_FIELDS:
                    setattr(row, name, getattr(updated, name))
                row.updated_at = datetime.now(timezone.utc)
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        self._current = updated
        logger.info("Transport settings updated", extra={"context": {"fields": sorted(k for k, v in values.items() if v)}})
        return updated

    @staticmethod
    def _overlay(base: WhatsAppCredentials, values: dict) -> WhatsAppCredentials:
        changes = {name: value for name, value in values.items() if name in CREDENTIAL_FIELDS and value}
        return replace(base, **changes)
