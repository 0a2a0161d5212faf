from fastapi import FastAPI, APIRouter, BackgroundTasks, Query
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging
import uuid
from typing import Optional

import engine
import settings
from billing_api import BillingClient
from engine import now_iso
from schemas import PreviewReport
from store import MongoStore
from sync import commit_report, preview_cabinets
from synthetic import SyntheticBillingClient, generate_synthetic

client = AsyncIOMotorClient(settings.MONGO_URL)
db = client[settings.DB_NAME]
store = MongoStore(db)

app = FastAPI(title="Honoraires Sync API")
api = APIRouter(prefix="/api")

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

DEMO_CABINET = settings.CabinetConfig(key='demo', name='Demo Cabinet')

# =============================================================================
# HELPERS
# =============================================================================
def configured_cabinets():
    if settings.CABINETS:
        return list(settings.CABINETS)
    if settings.BILLING_MODE == 'synthetic':
        return [DEMO_CABINET]
    return []

def billing_client_for(cabinet):
    if settings.BILLING_MODE == 'synthetic':
        return SyntheticBillingClient.for_cabinet(cabinet)
    return BillingClient.for_cabinet(cabinet)

async def get_sync(sync_id: str):
    return await store.get_sync_session(sync_id)

def preview_view(session):
    """Merged report served to the UI; sessions only keep the per-cabinet reports."""
    report = engine.unpack_report(PreviewReport.model_validate(session['report']))
    return report.model_dump(mode='json', exclude={'units'})

# =============================================================================
# CABINETS
# =============================================================================
@api.get("/cabinets")
async def list_cabinets():
    return {
        'mode': settings.BILLING_MODE,
        'cabinets': [{'key': c.key, 'name': c.name, 'configured': bool(c.token) or settings.BILLING_MODE == 'synthetic'}
                     for c in configured_cabinets()],
    }

# =============================================================================
# PREVIEW
# =============================================================================
async def run_preview(sync_id: str, cabinets):
    async def on_progress(event):
        await store.append_sync_log(sync_id, event['step'], dict(event, timestamp=now_iso()))

    try:
        report = await preview_cabinets(store, cabinets, billing_client_for, on_progress)
        data = {
            'report': engine.pack_report(report).model_dump(mode='json'),
            'summary': report.summary.model_dump(mode='json'),
            'failed_units': [f.model_dump() for f in report.failed_units],
            'previewed_at': now_iso(),
        }
        if report.units:
            data['status'] = 'previewed'
        else:
            data['status'] = 'error'
            data['processing_status.error'] = '; '.join(f.error for f in report.failed_units) or 'No cabinet previewed'
        await store.update_sync_session(sync_id, data)
    except Exception as e:
        logger.error(f"Preview failed: {e}", exc_info=True)
        await store.update_sync_session(sync_id, {
            'status': 'error',
            'processing_status.error': str(e)
        })

@api.post("/sync/preview")
async def start_preview(background_tasks: BackgroundTasks, body: Optional[dict] = None):
    available = {c.key: c for c in configured_cabinets()}
    keys = (body or {}).get('cabinets') or list(available)
    unknown = [k for k in keys if k not in available]
    if unknown:
        return {"error": f"Unknown cabinet(s): {', '.join(unknown)}"}
    if not keys:
        return {"error": "No cabinet configured"}

    cabinets = [available[k] for k in keys]
    sync_id = str(uuid.uuid4())[:12]
    session = {
        'sync_id': sync_id, 'status': 'processing',
        'cabinets': [c.name for c in cabinets],
        'processing_status': {'current_step': 'init', 'log': []},
        'report': None, 'result': None, 'failed_units': [],
        'created_at': now_iso(), 'completed_at': None
    }
    await store.create_sync_session(session)
    background_tasks.add_task(run_preview, sync_id, cabinets)
    return {"sync_id": sync_id, "status": "processing", "cabinets": session['cabinets']}

@api.get("/sync/{sync_id}/status")
async def get_status(sync_id: str):
    s = await get_sync(sync_id)
    if not s:
        return {"error": "Sync not found"}
    return {
        'sync_id': sync_id,
        'status': s['status'],
        'cabinets': s.get('cabinets', []),
        'processing_status': s.get('processing_status', {}),
        'summary': s.get('summary'),
        'failed_units': s.get('failed_units', []),
        'completed_at': s.get('completed_at')
    }

@api.get("/sync/{sync_id}/preview")
async def get_preview(sync_id: str):
    s = await get_sync(sync_id)
    if not s:
        return {"error": "Sync not found"}
    if not s.get('report'):
        return {"error": f"No preview available (status: {s['status']})"}
    return preview_view(s)

@api.get("/sync/{sync_id}/anomalies")
async def get_anomalies(sync_id: str, severity: Optional[str] = None,
                        anomaly_type: Optional[str] = Query(None, alias="type")):
    s = await get_sync(sync_id)
    if not s:
        return {"error": "Sync not found"}
    if not s.get('report'):
        return {"error": f"No preview available (status: {s['status']})"}
    anomalies = preview_view(s)['anomalies']
    if severity:
        anomalies = [a for a in anomalies if a['severity'] == severity]
    if anomaly_type:
        anomalies = [a for a in anomalies if a['type'] == anomaly_type]
    return {'total': len(anomalies), 'anomalies': anomalies}

# =============================================================================
# ACCEPT / CANCEL
# =============================================================================
async def run_commit(sync_id: str):
    async def on_progress(event):
        await store.append_sync_log(sync_id, event['step'], dict(event, timestamp=now_iso()))

    try:
        s = await get_sync(sync_id)
        report = PreviewReport.model_validate(s['report'])
        result = await commit_report(store, report, on_progress)
        await store.update_sync_session(sync_id, {
            'status': 'committed',
            'result': result.model_dump(mode='json'),
            'completed_at': now_iso()
        })
    except Exception as e:
        logger.error(f"Commit failed: {e}", exc_info=True)
        await store.update_sync_session(sync_id, {
            'status': 'error',
            'processing_status.error': str(e)
        })

@api.post("/sync/{sync_id}/accept")
async def accept_preview(sync_id: str, background_tasks: BackgroundTasks):
    s = await get_sync(sync_id)
    if not s:
        return {"error": "Sync not found"}
    # Only one caller wins the previewed -> committing transition
    if not await store.transition_sync_session(sync_id, 'previewed', 'committing',
                                               {'processing_status.current_step': 'commit'}):
        return {"error": f"Sync cannot be accepted (status: {s['status']})"}
    background_tasks.add_task(run_commit, sync_id)
    return {"ok": True, "status": "committing"}

@api.post("/sync/{sync_id}/cancel")
async def cancel_preview(sync_id: str):
    s = await get_sync(sync_id)
    if not s:
        return {"error": "Sync not found"}
    if not await store.transition_sync_session(sync_id, 'previewed', 'cancelled',
                                               {'report': None, 'completed_at': now_iso()}):
        return {"error": f"Sync cannot be cancelled (status: {s['status']})"}
    return {"ok": True, "status": "cancelled"}

@api.get("/sync/{sync_id}/result")
async def get_result(sync_id: str):
    s = await get_sync(sync_id)
    if not s:
        return {"error": "Sync not found"}
    if s['status'] != 'committed':
        return {"error": f"Sync not committed (status: {s['status']})"}
    return s['result']

# =============================================================================
# SYNTHETIC DATA
# =============================================================================
@api.post("/synthetic")
async def seed_synthetic_data():
    if settings.BILLING_MODE != 'synthetic':
        return {"error": "Synthetic data is only available with BILLING_MODE=synthetic"}
    try:
        cabinet = configured_cabinets()[0]
        data = generate_synthetic(cabinet.name)
        await store.seed(data['clients'], data['local_subscriptions'], data['local_lines'], data['products'])
        return {
            "cabinet": cabinet.name,
            "clients": len(data['clients']),
            "subscriptions": len(data['local_subscriptions']),
            "ground_truth": data['ground_truth'],
        }
    except Exception as e:
        logger.error(f"Synthetic generation failed: {e}", exc_info=True)
        return {"error": str(e)}

# =============================================================================
# HEALTH
# =============================================================================
@api.get("/")
async def root():
    return {"message": "Honoraires Sync API v1.0", "status": "running"}

# =============================================================================
# APP CONFIG
# =============================================================================
app.include_router(api)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
