import os
from dataclasses import dataclass, field
from enum import Enum


class CustomerField(str, Enum):
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    STAGE = "stage"
    TOTAL_REVENUE = "total_revenue"
    TOUCHPOINTS = "touchpoints"


ALL_FIELDS = tuple(CustomerField)
# touchpoints is derived from the note log and is never directly editable.
DEFAULT_EDITABLE = (
    CustomerField.NAME,
    CustomerField.EMAIL,
    CustomerField.PHONE,
    CustomerField.STAGE,
    CustomerField.TOTAL_REVENUE,
)


@dataclass(frozen=True)
class FieldSettings:
    """Which customer fields the API shows and accepts edits for."""

    visible: frozenset[CustomerField] = field(default_factory=lambda: frozenset(ALL_FIELDS))
    editable: frozenset[CustomerField] = field(default_factory=lambda: frozenset(DEFAULT_EDITABLE))

    def is_visible(self, f: CustomerField) -> bool:
        return f in self.visible

    def is_editable(self, f: CustomerField) -> bool:
        return f in self.editable and f is not CustomerField.TOUCHPOINTS


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str
    fields: FieldSettings


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def parse_field_list(raw: str, default: tuple[CustomerField, ...]) -> frozenset[CustomerField]:
    """
    Parse a comma separated list of CustomerField values.
    Empty input means the default set; unknown names raise ValueError.
    """
    raw = (raw or "").strip()
    if not raw:
        return frozenset(default)
    out: set[CustomerField] = set()
    for part in raw.split(","):
        name = part.strip().lower()
        if not name:
            continue
        try:
            out.add(CustomerField(name))
        except ValueError:
            valid = ", ".join(f.value for f in CustomerField)
            raise ValueError(f"Unknown customer field '{name}'. Valid: {valid}") from None
    return frozenset(out)


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///crm.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        fields=FieldSettings(
            visible=parse_field_list(_getenv("CRM_VISIBLE_FIELDS"), ALL_FIELDS),
            editable=parse_field_list(_getenv("CRM_EDITABLE_FIELDS"), DEFAULT_EDITABLE),
        ),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "CRM_FIELD_SETTINGS": s.fields,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
    }
