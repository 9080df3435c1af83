"""System API: health check, scheduler status, manual cycle, config reload."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from goalhedge.api.deps import require_api_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(require_api_token)])
def scheduler_status():
    """Current scheduler state with job details."""
    from goalhedge.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/trigger/{strategy_key}", dependencies=[Depends(require_api_token)])
async def trigger_strategy(strategy_key: str):
    """Manually run one cycle of a strategy's trades."""
    from goalhedge.engine.scheduler import run_strategy_cycle
    try:
        summary = await run_strategy_cycle(strategy_key)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Strategy {strategy_key} is not running")
    return {"status": "ok", **summary.to_dict()}


@router.post("/reload-config/{strategy_key}", dependencies=[Depends(require_api_token)])
def reload_config(strategy_key: str):
    """Re-read strategy settings; invalid settings leave the running config untouched."""
    from goalhedge.engine.scheduler import reload_strategy_config
    try:
        config = reload_strategy_config(strategy_key)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Strategy {strategy_key} is not running")
    except ValidationError as e:
        logger.warning(f"[{strategy_key}] Rejected config reload: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    return config.model_dump()
