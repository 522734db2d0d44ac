from __future__ import annotations
import logging
logger = logging.getLogger("hangar.store.router")

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..domain.errors import ChannelConflictError
from ..domain.models import AddonInstallResult, AppSettings, LocalState, ProgressEvent
from .errors import StoreError
from .models import (
    CatalogStatus,
    DiskSpaceResponse,
    InstallPathCheck,
    SettingsPatch,
    StoreEntry,
    StoreInstallRequest,
    StoreResponse,
    StoreUninstallRequest,
)
from .service import StoreService

router = APIRouter()

# ----------------------------
# Singletons (simple + safe)
# ----------------------------

_store_service: Optional[StoreService] = None


def get_store_service() -> StoreService:
    global _store_service
    if _store_service is None:
        _store_service = StoreService()
    return _store_service


def _http_error(e: StoreError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


# ----------------------------
# Store
# ----------------------------

@router.get("/store", response_model=StoreResponse)
def get_store(
    q: Optional[str] = Query(default=None, description="Search query (id/name/description)"),
    svc: StoreService = Depends(get_store_service),
) -> StoreResponse:
    logger.info(f"GET /store called with query: {q}")
    return svc.get_store(q=q)


@router.get("/store/progress/{addon_id}", response_model=ProgressEvent)
def get_progress(addon_id: str, svc: StoreService = Depends(get_store_service)) -> ProgressEvent:
    event = svc.get_progress(addon_id)
    if event is None:
        raise HTTPException(status_code=404, detail=f"No progress for {addon_id}")
    return event


@router.get("/store/{addon_id}", response_model=StoreEntry)
def get_store_addon(addon_id: str, svc: StoreService = Depends(get_store_service)) -> StoreEntry:
    logger.info(f"GET /store/{addon_id} called")
    try:
        return svc.get_store_item(addon_id)
    except StoreError as e:
        logger.error(f"Addon not found: {addon_id}")
        raise _http_error(e)


@router.get("/catalog", response_model=CatalogStatus)
def get_catalog_status(svc: StoreService = Depends(get_store_service)) -> CatalogStatus:
    return svc.get_status()


@router.post("/catalog/reload", response_model=CatalogStatus)
def reload_catalog(svc: StoreService = Depends(get_store_service)) -> CatalogStatus:
    logger.info("POST /catalog/reload called")
    try:
        return svc.reload()
    except StoreError as e:
        logger.error(f"Catalog reload failed: {e}")
        raise _http_error(e)


@router.post("/store/install", response_model=AddonInstallResult)
def install_from_store(
    req: StoreInstallRequest,
    svc: StoreService = Depends(get_store_service),
) -> AddonInstallResult:
    logger.info(f"POST /store/install called for addon_id: {req.addon_id} channel: {req.channel}")
    try:
        result = svc.install_from_store(addon_id=req.addon_id, channel=req.channel)
    except ChannelConflictError as e:
        raise HTTPException(
            status_code=409,
            detail={"error_code": e.code, "message": str(e), "details": e.details()},
        )
    except StoreError as e:
        raise _http_error(e)

    if result.status != "installed":
        logger.warning(f"Installation failed for addon_id: {req.addon_id}")
    return result


@router.post("/store/uninstall", response_model=AddonInstallResult)
def uninstall_from_store(
    req: StoreUninstallRequest,
    svc: StoreService = Depends(get_store_service),
) -> AddonInstallResult:
    logger.info(f"POST /store/uninstall called for addon_id: {req.addon_id}")
    try:
        return svc.uninstall_from_store(addon_id=req.addon_id)
    except StoreError as e:
        raise _http_error(e)


@router.post("/store/reconcile", response_model=LocalState)
def reconcile(svc: StoreService = Depends(get_store_service)) -> LocalState:
    logger.info("POST /store/reconcile called")
    return svc.reconcile()


# ----------------------------
# State + settings
# ----------------------------

@router.get("/state", response_model=LocalState)
def get_state(svc: StoreService = Depends(get_store_service)) -> LocalState:
    return svc.get_state()


@router.patch("/settings", response_model=AppSettings)
def update_settings(req: SettingsPatch, svc: StoreService = Depends(get_store_service)) -> AppSettings:
    return svc.update_settings(req)


@router.post("/settings/install-path/test", response_model=InstallPathCheck)
def test_install_path(svc: StoreService = Depends(get_store_service)) -> InstallPathCheck:
    return svc.test_install_path()


@router.get("/system/diskspace", response_model=DiskSpaceResponse)
def get_disk_space(
    path: Optional[str] = Query(default=None, description="Defaults to the install path"),
    svc: StoreService = Depends(get_store_service),
) -> DiskSpaceResponse:
    try:
        return svc.disk_space(path)
    except StoreError as e:
        raise _http_error(e)
    except OSError as e:
        raise HTTPException(status_code=400, detail=str(e))
