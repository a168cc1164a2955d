"""Process-wide collaborators handed to routers as FastAPI dependencies.

Each getter builds its object on first use from ``settings``. Tests replace
them through ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException

from config import settings
from database import async_session_maker
from services.access_ledger import AccessLedger, build_access_ledger
from services.account_store import AccountStore, SqlAccountStore
from services.admission import AdmissionController
from services.errors import ProviderConfigError
from services.generation import GenerationOrchestrator, build_orchestrator
from services.job_store import JobStore, SqlJobStore
from services.promo_codes import PromoCodeRegistry
from services.providers.cloud_storage import GcsObjectStorage
from services.providers.veo import build_veo_provider
from services.providers.watermark import FfmpegWatermarker

logger = logging.getLogger(__name__)

_instances: Dict[str, Any] = {}


def get_access_ledger() -> AccessLedger:
    if "ledger" not in _instances:
        _instances["ledger"] = build_access_ledger(settings)
    return _instances["ledger"]


def get_account_store() -> AccountStore:
    if "accounts" not in _instances:
        _instances["accounts"] = SqlAccountStore(async_session_maker)
    return _instances["accounts"]


def get_job_store() -> JobStore:
    if "jobs" not in _instances:
        _instances["jobs"] = SqlJobStore(async_session_maker)
    return _instances["jobs"]


def get_promo_registry() -> PromoCodeRegistry:
    if "promos" not in _instances:
        _instances["promos"] = PromoCodeRegistry()
    return _instances["promos"]


def get_admission_controller(
    ledger: AccessLedger = Depends(get_access_ledger),
    accounts: AccountStore = Depends(get_account_store),
) -> AdmissionController:
    return AdmissionController(ledger, accounts)


def get_orchestrator() -> GenerationOrchestrator:
    if "orchestrator" not in _instances:
        try:
            provider = build_veo_provider(settings)
        except (ProviderConfigError, ValueError) as exc:
            logger.error("Video provider is not configured: %s", exc)
            raise HTTPException(status_code=503, detail="Video generation is not configured.") from exc
        _instances["orchestrator"] = build_orchestrator(
            settings,
            provider=provider,
            job_store=get_job_store(),
            storage=GcsObjectStorage.from_settings(settings),
            watermarker=FfmpegWatermarker(),
        )
    return _instances["orchestrator"]


async def shutdown_dependencies() -> None:
    orchestrator = _instances.pop("orchestrator", None)
    if orchestrator is not None:
        await orchestrator.provider.aclose()
    ledger = _instances.pop("ledger", None)
    if ledger is not None:
        await ledger.close()
    _instances.clear()
