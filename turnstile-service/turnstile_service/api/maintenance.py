import logging

from fastapi import APIRouter, Request, HTTPException

from ..db.schema import RECORD_TABLES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/maintenance")


@router.post("/purge")
async def purge_expired(request: Request):
    store = request.app.state.store
    if not store:
        raise HTTPException(status_code=503, detail="Store not available")

    purged = {}
    errors = []
    for table in RECORD_TABLES:
        try:
            purged[table] = await store.purge_expired(table)
        except Exception as e:
            logger.error("Purge failed table=%s: %s", table, e)
            errors.append(f"{table}: {e}")

    logger.info("Purged expired records: %s", purged)
    return {"purged": purged, "total": sum(purged.values()), "errors": errors}
