from fastapi import APIRouter, HTTPException, Request

from yieldsentry.routers.opportunities import _engine

router = APIRouter(tags=["System"])


@router.get("/system/health")
async def system_health(request: Request):
    return _engine(request).get_system_health()


@router.get("/cache-status")
async def cache_status(request: Request):
    return _engine(request).get_cache_status()


@router.post("/sync")
async def force_sync(request: Request):
    return await _engine(request).force_sync()


@router.get("/risk/alerts")
async def active_alerts(request: Request):
    alerts = _engine(request).get_active_alerts()
    return {"count": len(alerts), "alerts": alerts}


@router.post("/risk/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(request: Request, alert_id: str):
    if not _engine(request).acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"status": "acknowledged", "id": alert_id}


@router.get("/risk/report")
async def risk_report(request: Request):
    return _engine(request).get_risk_report()
