# app/services/health_service.py
from typing import Dict, Any
from datetime import datetime, timezone
import os
import platform
import tempfile

import psutil
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import check_db_connection
import logging

logger = logging.getLogger(__name__)


def _directory_writable(path: str) -> bool:
    try:
        os.makedirs(path, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".healthcheck-"):
            pass
        return True
    except OSError as e:
        logger.error(f"Directory {path} is not writable: {e}")
        return False


async def get_detailed_health(
    session_factory: async_sessionmaker[AsyncSession],
    output_dir: str,
    tmp_dir: str,
    in_flight: int = 0,
) -> Dict[str, Any]:
    """Get detailed health status of the database, artifact storage and host"""
    health_status = {
        "services": {},
        "system": {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    # DB
    try:
        db_healthy = await check_db_connection(session_factory)
        health_status["services"]["database"] = {
            "healthy": db_healthy,
            "status": "connected" if db_healthy else "disconnected",
        }
    except Exception as e:
        health_status["services"]["database"] = {"healthy": False, "error": str(e)}

    # Storage
    for name, path in (("output", output_dir), ("scratch", tmp_dir)):
        writable = _directory_writable(path)
        health_status["services"][f"{name}_storage"] = {
            "healthy": writable,
            "path": os.path.abspath(path),
        }

    health_status["tasks"] = {"in_flight": in_flight}

    # System
    try:
        health_status["system"] = {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": psutil.virtual_memory().percent,
            "disk_percent": psutil.disk_usage(os.path.abspath(output_dir)).percent,
            "python_version": platform.python_version(),
            "platform": platform.platform(),
        }
    except Exception as e:
        logger.error(f"Failed to get system metrics: {e}")

    all_services_healthy = all(s.get("healthy", False) for s in health_status["services"].values())
    health_status["status"] = "ok" if all_services_healthy else "degraded"

    return health_status
