"""Configuration helpers for the complaint desk service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Final, TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_DATA_DIR: Final[str] = "data"
_DEFAULT_DIRECTORY_PATH: Final[str] = "data/directory.yaml"
_DEFAULT_MESSAGE_MAX_LENGTH: Final[int] = 1000
_DEFAULT_SUBSCRIPTION_BUFFER_SIZE: Final[int] = 256
_DEFAULT_ANONYMOUS_DISPLAY_NAME: Final[str] = "Anonymous Student"
_DEFAULT_ASSISTANT_URL: Final[str] = "http://localhost:8000/assistant/chat"
_DEFAULT_ASSISTANT_TIMEOUT: Final[float] = 60.0
_DEFAULT_OPENAI_CHAT_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_ASSISTANT_SYSTEM_PROMPT: Final[str] = (
    "You are a helpful assistant that helps students draft clear, specific complaints. "
    "Ask what happened, when and where it happened, and who was involved. "
    "Suggest a concise title, one of the categories Communication, Hub, Review, Payments or Others, "
    "and an urgency of Low, Normal, High or Critical. Keep answers short and polite."
)
_DEFAULT_EMAIL_API_URL: Final[str] = "https://api.resend.com/emails"
_DEFAULT_EMAIL_SENDER: Final[str] = "Complaint Desk <onboarding@resend.dev>"
_DEFAULT_EMAIL_TIMEOUT: Final[float] = 10.0
_DEFAULT_PUBLIC_BASE_URL: Final[str] = "http://localhost:8080"
_DEFAULT_STREAM_HEARTBEAT_SECONDS: Final[float] = 15.0


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError as exc:
            raise ValueError(f"Environment variable {name} must be an integer") from exc
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    data_dir: str = _DEFAULT_DATA_DIR
    directory_path: str = _DEFAULT_DIRECTORY_PATH
    message_max_length: int = _DEFAULT_MESSAGE_MAX_LENGTH
    subscription_buffer_size: int = _DEFAULT_SUBSCRIPTION_BUFFER_SIZE
    anonymous_display_name: str = _DEFAULT_ANONYMOUS_DISPLAY_NAME
    assistant_url: str = _DEFAULT_ASSISTANT_URL
    assistant_api_key: str | None = None
    assistant_timeout: float = _DEFAULT_ASSISTANT_TIMEOUT
    openai_api_key: str | None = None
    openai_chat_model: str = _DEFAULT_OPENAI_CHAT_MODEL
    assistant_system_prompt: str = _DEFAULT_ASSISTANT_SYSTEM_PROMPT
    email_api_url: str = _DEFAULT_EMAIL_API_URL
    email_api_key: str | None = None
    email_sender: str = _DEFAULT_EMAIL_SENDER
    email_timeout: float = _DEFAULT_EMAIL_TIMEOUT
    public_base_url: str = _DEFAULT_PUBLIC_BASE_URL
    stream_heartbeat_seconds: float = _DEFAULT_STREAM_HEARTBEAT_SECONDS
    observability_metrics_enabled: bool = True
    observability_namespace: str = "complaintdesk"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        return cls(
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            directory_path=os.getenv("DIRECTORY_PATH", _DEFAULT_DIRECTORY_PATH),
            message_max_length=_env_int("MESSAGE_MAX_LENGTH", _DEFAULT_MESSAGE_MAX_LENGTH, minimum=1),
            subscription_buffer_size=_env_int(
                "SUBSCRIPTION_BUFFER_SIZE", _DEFAULT_SUBSCRIPTION_BUFFER_SIZE, minimum=1
            ),
            anonymous_display_name=os.getenv("ANONYMOUS_DISPLAY_NAME", _DEFAULT_ANONYMOUS_DISPLAY_NAME),
            assistant_url=os.getenv("ASSISTANT_URL", _DEFAULT_ASSISTANT_URL),
            assistant_api_key=os.getenv("ASSISTANT_API_KEY"),
            assistant_timeout=_env_float("ASSISTANT_TIMEOUT", _DEFAULT_ASSISTANT_TIMEOUT),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_chat_model=os.getenv("OPENAI_CHAT_MODEL", _DEFAULT_OPENAI_CHAT_MODEL),
            assistant_system_prompt=os.getenv("ASSISTANT_SYSTEM_PROMPT", _DEFAULT_ASSISTANT_SYSTEM_PROMPT),
            email_api_url=os.getenv("EMAIL_API_URL", _DEFAULT_EMAIL_API_URL),
            email_api_key=os.getenv("EMAIL_API_KEY") or os.getenv("RESEND_API_KEY"),
            email_sender=os.getenv("EMAIL_SENDER", _DEFAULT_EMAIL_SENDER),
            email_timeout=_env_float("EMAIL_TIMEOUT", _DEFAULT_EMAIL_TIMEOUT),
            public_base_url=os.getenv("PUBLIC_BASE_URL", _DEFAULT_PUBLIC_BASE_URL),
            stream_heartbeat_seconds=_env_float(
                "STREAM_HEARTBEAT_SECONDS", _DEFAULT_STREAM_HEARTBEAT_SECONDS
            ),
            observability_metrics_enabled=_env_bool("OBSERVABILITY_METRICS_ENABLED", True),
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "complaintdesk"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def email_enabled(self) -> bool:
        return bool(self.email_api_key and self.email_api_url)

    def complaints_root(self) -> Path:
        return Path(self.data_dir).resolve()

    def messages_root(self) -> Path:
        return self.complaints_root() / "messages"

    def complaint_url(self, complaint_id: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/complaints/{complaint_id}"

    def build_metrics_recorder(self) -> "MetricsRecorder":
        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )


__all__ = ["Settings"]
