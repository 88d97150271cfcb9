import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    initial_access_code: Optional[str] = None
    referral_bonus: Decimal = Field(default=Decimal("5000.00"), gt=0)
    currency: str = "NGN"
    min_withdrawal: Decimal = Field(default=Decimal("1000.00"), ge=0)
    max_withdrawal: Decimal = Field(default=Decimal("10000000.00"), gt=0)
    event_buffer_size: int = Field(default=100, ge=1)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        values = {
            "initial_access_code": os.getenv("ACCESS_GATE_INITIAL_CODE"),
            "referral_bonus": os.getenv("ACCESS_GATE_REFERRAL_BONUS"),
            "currency": os.getenv("ACCESS_GATE_CURRENCY"),
            "min_withdrawal": os.getenv("ACCESS_GATE_MIN_WITHDRAWAL"),
            "max_withdrawal": os.getenv("ACCESS_GATE_MAX_WITHDRAWAL"),
            "event_buffer_size": os.getenv("ACCESS_GATE_EVENT_BUFFER"),
            "log_level": os.getenv("ACCESS_GATE_LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
