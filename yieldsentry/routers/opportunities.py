from fastapi import APIRouter, HTTPException, Request
import logging

from yieldsentry.exceptions import InsufficientSourcesError

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Opportunities"])


def _engine(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not started")
    return engine


@router.get("/opportunities")
async def list_opportunities(request: Request, chain: str = None, limit: int = 100):
    engine = _engine(request)
    try:
        items = await engine.list_opportunities()
    except InsufficientSourcesError as e:
        logger.warning("Opportunity list unavailable: %s", e)
        raise HTTPException(status_code=503, detail="no data available")
    if chain:
        items = [o for o in items if o.chain.lower() == chain.lower()]
    safe_limit = max(1, min(limit, 500))
    return {"count": len(items), "opportunities": items[:safe_limit]}


@router.get("/opportunities/{opportunity_id}")
async def get_opportunity(request: Request, opportunity_id: str, full: bool = False):
    engine = _engine(request)
    if full:
        page = await engine.get_detail_page(opportunity_id)
        if page is None:
            raise HTTPException(status_code=404, detail="Opportunity not found")
        return page
    opportunity = await engine.get_opportunity_detail(opportunity_id)
    if opportunity is None:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    return opportunity


@router.get("/opportunities/{opportunity_id}/chart")
async def get_opportunity_chart(request: Request, opportunity_id: str):
    engine = _engine(request)
    opportunity = await engine.get_opportunity_detail(opportunity_id)
    if opportunity is None:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    if not opportunity.pool_id:
        return {"pool_id": None, "points": []}
    points = await engine.get_chart_data(opportunity.pool_id)
    return {"pool_id": opportunity.pool_id, "points": points}


@router.get("/opportunities/{opportunity_id}/risk")
async def get_opportunity_risk(request: Request, opportunity_id: str):
    engine = _engine(request)
    assessment = await engine.get_opportunity_risk(opportunity_id)
    if assessment is None:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    return assessment


@router.get("/stats")
async def get_stats(request: Request):
    return await _engine(request).get_adapter_stats()


@router.post("/refresh")
async def refresh(request: Request):
    counts = await _engine(request).refresh_all_data()
    return {"status": "refreshed", "adapters": counts}
