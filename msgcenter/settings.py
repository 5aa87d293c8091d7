import os

from pydantic import BaseModel, Field

_DEFAULT_STREAM_BUFFER_SIZE = 0       # 0 = unbounded
_DEFAULT_AUDIT_LOG_CAPACITY = 2000    # recent posts kept for recent_posts()


class BusSettings(BaseModel):
    stream_buffer_size: int = Field(default=_DEFAULT_STREAM_BUFFER_SIZE, ge=0)
    audit_log_capacity: int = Field(default=_DEFAULT_AUDIT_LOG_CAPACITY, ge=0)

    @classmethod
    def from_env(cls) -> "BusSettings":
        """Build settings from MSGCENTER_* environment variables.

        Unset or empty variables fall back to the defaults.  Values that do
        not parse raise ``pydantic.ValidationError``.
        """
        values: dict[str, str] = {}
        buffer_size = os.getenv("MSGCENTER_STREAM_BUFFER_SIZE", "").strip()
        if buffer_size:
            values["stream_buffer_size"] = buffer_size
        capacity = os.getenv("MSGCENTER_AUDIT_LOG_CAPACITY", "").strip()
        if capacity:
            values["audit_log_capacity"] = capacity
        return cls.model_validate(values)
