import os
from functools import lru_cache

import urllib3
from dotenv import load_dotenv, find_dotenv
from pydantic import BaseModel, Field

TIMEOUT_ENV = "REQKIT_TIMEOUT_S"
VERIFY_TLS_ENV = "REQKIT_VERIFY_TLS"


class Settings(BaseModel):
    timeout_s: float = Field(10.0, ge=0.0)
    verify_tls: bool = True


@lru_cache(maxsize=1)
def _load_env_file() -> bool:
    # variables already set in the process win over the .env file
    return load_dotenv(find_dotenv(usecwd=True))


def load_settings() -> Settings:
    _load_env_file()

    values = {}
    if os.getenv(TIMEOUT_ENV):
        values["timeout_s"] = os.getenv(TIMEOUT_ENV)
    if os.getenv(VERIFY_TLS_ENV):
        values["verify_tls"] = os.getenv(VERIFY_TLS_ENV)

    settings = Settings.model_validate(values)

    if not settings.verify_tls:
        # self-signed certificates on the LAN, no warning per request
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    return settings
