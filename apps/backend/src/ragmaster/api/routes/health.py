from fastapi import APIRouter, Depends

from ragmaster.api.dependencies import get_engine
from ragmaster.runtime.queue import QueueEngine

router = APIRouter(tags=["health"])


@router.get("/health")
async def liveness(engine: QueueEngine = Depends(get_engine)) -> dict[str, object]:
    """Liveness probe — service is running; includes the run-lock state."""
    return {"status": "ok", "queue_processing": engine.is_running}
