"""Account model and credential loading.

Credentials are ``ownerAddress:token`` records separated by whitespace
(normally one per line).  Malformed records are skipped with a warning; an
input with no valid record at all is a fatal configuration error.
"""

import base64
import logging
import os
import random
import string
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.config import ConfigurationError
from core.utils import mask_secret

logger = logging.getLogger(__name__)


def worker_identity(owner_address: str) -> str:
    """Deterministic worker id: base64 of the UTF-8 owner address."""
    return base64.b64encode(owner_address.encode("utf-8")).decode("ascii")


def new_session_id(length: int = 11) -> str:
    """Random base-36 token, generated once per account per process run."""
    return "".join(
        random.choices(string.ascii_lowercase + string.digits, k=length)
    )


class Account(BaseModel):
    """One platform account.

    Attributes:
        owner_address: Wallet address that owns the worker.
        token: Bearer token (secret; never logged in full).
        worker_id: ``base64(owner_address)``; also used as the worker identity.
        session_id: Unique per process run; sent as the REGISTER message id.
    """

    model_config = ConfigDict(frozen=True)

    owner_address: str
    token: str = Field(repr=False)
    worker_id: str = ""
    session_id: str = Field(default_factory=new_session_id)

    @model_validator(mode="before")
    @classmethod
    def _derive_worker_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("worker_id") and data.get("owner_address"):
            data = {**data, "worker_id": worker_identity(data["owner_address"])}
        return data

    @property
    def masked_token(self) -> str:
        return mask_secret(self.token)


def parse_accounts(text: str) -> List[Account]:
    """Parse whitespace-separated ``ownerAddress:token`` records."""
    accounts: List[Account] = []
    for record in text.split():
        parts = record.split(":")
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            logger.warning("Skipping malformed account line: %s", mask_secret(record, 8))
            continue
        owner_address, token = (p.strip() for p in parts)
        accounts.append(Account(owner_address=owner_address, token=token))
    return accounts


def load_accounts(file_path: str) -> List[Account]:
    """Load accounts from *file_path*.

    Raises:
        ConfigurationError: The file is missing/unreadable or holds no
            valid record.
    """
    if not os.path.exists(file_path):
        raise ConfigurationError(f"Account file not found: {file_path}")
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"Error reading account file {file_path}: {e}") from e

    accounts = parse_accounts(text)
    if not accounts:
        raise ConfigurationError(f"No valid accounts found in {file_path}")
    logger.info("Loaded %d accounts from %s", len(accounts), file_path)
    return accounts
