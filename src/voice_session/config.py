"""Runtime configuration for voice sessions."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from voice_session.controller import CaptureMode, SessionConfig
from voice_session.models import ProviderSelection
from voice_session.pipeline import SegmentPolicy
from voice_session.response_gate import ResponseWaitPolicy


class Settings(BaseSettings):
    """Environment-driven runtime settings."""

    model_config = SettingsConfigDict(env_prefix="VOICE_SESSION_", env_file=".env", extra="ignore")

    app_name: str = "voice-session"
    log_level: str = "INFO"
    microphone_device: str = Field(
        default="default",
        description="Input device name; 'default' selects the system default microphone.",
    )
    capture_mode: CaptureMode = CaptureMode.CONTINUOUS
    max_duration_seconds: float = Field(default=180.0, gt=0)
    tick_interval_seconds: float = Field(default=0.1, ge=0)
    response_wait_policy: ResponseWaitPolicy = ResponseWaitPolicy.STOP_IMMEDIATELY
    segment_policy: SegmentPolicy = SegmentPolicy.QUEUE
    stt_timeout_seconds: float = Field(default=30.0, gt=0)
    managed_stt_enabled: bool = True
    selected_stt_provider: str | None = None
    stt_language: str = "en-US"

    def build_session_config(self, *, mode: CaptureMode | None = None) -> SessionConfig:
        return SessionConfig(
            mode=mode or self.capture_mode,
            max_duration_seconds=self.max_duration_seconds,
            tick_interval_seconds=self.tick_interval_seconds,
            response_wait_policy=self.response_wait_policy,
        )

    def build_provider_selection(self) -> ProviderSelection:
        return ProviderSelection(
            selected_provider=self.selected_stt_provider,
            managed_backend_enabled=self.managed_stt_enabled,
        )


settings = Settings()
