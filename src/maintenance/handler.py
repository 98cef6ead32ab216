from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from drafts.adapter import StorageAdapter
from drafts.backends import JsonFileBackend
from drafts.config import ENV_PATH, DraftStorageConfig
from drafts.envelope import EnvelopeCodec
from drafts.quota import QuotaManager


logger = logging.getLogger(__name__)


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def run_once() -> Dict[str, Any]:
    """Apply the retention cleanup to the file-backed draft store."""
    config = DraftStorageConfig.from_env()
    path = _require(config.storage_path, ENV_PATH)

    codec = EnvelopeCodec()
    adapter = StorageAdapter(JsonFileBackend(path, max_bytes=config.max_bytes), codec)
    if not adapter.supported:
        return {
            "ok": False,
            "removed": 0,
            "note": "storage access blocked" if adapter.blocked else "storage not supported",
        }

    quota = QuotaManager(adapter, codec, config)
    removed = quota.cleanup()
    health = quota.health_snapshot()
    logger.info("draft store cleanup removed %d entries (%.2f%% used)", removed, health.percent_used)

    return {
        "ok": True,
        "removed": removed,
        "health": health.model_dump(by_alias=True),
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    return run_once()
