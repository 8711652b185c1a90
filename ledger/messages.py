"""Worker channel payloads.

The remote orchestrator expects two client messages: a single ``REGISTER``
right after the channel opens and a ``HEARTBEAT`` every heartbeat period.
Field names (including the capitalised ``Worker``/``Capacity`` keys of the
heartbeat) are part of the wire format.
"""

import random
from typing import Any, Dict, Optional

from core.config import BotSettings
from ledger.accounts import Account
from ledger.assignments import ResourceAssignment

REGISTER = "REGISTER"
HEARTBEAT = "HEARTBEAT"


def build_register_message(account: Account, settings: BotSettings) -> Dict[str, Any]:
    return {
        "workerID": account.worker_id,
        "msgType": REGISTER,
        "workerType": settings.worker_type,
        "message": {
            "id": account.session_id,
            "type": REGISTER,
            "worker": {
                "host": settings.worker_host,
                "identity": account.worker_id,
                "ownerAddress": account.owner_address,
                "type": settings.worker_type,
            },
        },
    }


def build_heartbeat_message(
    account: Account,
    assignment: ResourceAssignment,
    settings: BotSettings,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """HEARTBEAT with a fresh memory figure and the worker's fixed hardware."""
    rng = rng or random
    return {
        "message": {
            "Worker": {
                "Identity": account.worker_id,
                "ownerAddress": account.owner_address,
                "type": settings.worker_type,
                "Host": settings.worker_host,
            },
            "Capacity": {
                "AvailableMemory": f"{rng.random() * settings.max_memory_gb:.2f}",
                "AvailableStorage": assignment.storage,
                "AvailableGPU": assignment.gpu,
                "AvailableModels": [],
            },
        },
        "msgType": HEARTBEAT,
        "workerType": settings.worker_type,
        "workerID": account.worker_id,
    }
