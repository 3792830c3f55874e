"""
HubSpot Task Automation Service
FastAPI application exposing the automation trigger processor, the scheduled
run executor, the stuck-run reconciler, the exit/engagement reactors and the
HubSpot cache syncs.

Supports both local development (SQLite + APScheduler) and
Vercel deployment (PostgreSQL + Cron Jobs)
"""

import os
from fastapi import FastAPI, Request, BackgroundTasks, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from datetime import datetime, timezone
import logging
import asyncio
from pathlib import Path
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional, Union

from models import (
    AutomationDefinition, AutomationError, ConfigurationError, InvalidTriggerError, ScheduledTimeInPastError,
)
from working_hours import to_iso_z

# Check if running on Vercel
IS_VERCEL = os.environ.get('VERCEL') == '1' or os.environ.get('POSTGRES_URL') is not None

# APScheduler for background job scheduling (only used locally, not on Vercel)
SCHEDULER_AVAILABLE = False
if not IS_VERCEL:
    try:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.interval import IntervalTrigger
        from apscheduler.triggers.cron import CronTrigger
        SCHEDULER_AVAILABLE = True
    except ImportError:
        logging.warning("APScheduler not installed. Background jobs disabled.")
else:
    logging.info("Running on Vercel - using Cron Jobs instead of APScheduler")

logger = logging.getLogger(__name__)

ENGINE_IMPORT_ERROR = None
try:
    from sync_engine import TaskSyncEngine, load_config as load_service_config
    from automation_engine import AutomationEngine
    from contact_sync import ContactSync
    from database import TaskCacheDB
    from hubspot_client import HubSpotClient
    from reactors import EngagementReactor, ExitReactor, MIN_CALL_DURATION_MS, route_webhook_events
    ENGINE_AVAILABLE = True
except Exception as e:
    ENGINE_AVAILABLE = False
    ENGINE_IMPORT_ERROR = str(e)
    logger.warning(f"Automation engine not fully available: {e}")

VERSION = "1.0.0"
CONFIG_PATH = Path(__file__).parent / "config.yaml"

# Global components
service_config = None
db = None
hubspot_client = None
engine = None
exit_reactor = None
engagement_reactor = None
sync_engine = None
scheduler = None  # APScheduler instance

# Scheduler state tracking
scheduler_state = {
    "enabled": False,
    "mode": "vercel_cron" if IS_VERCEL else "apscheduler",
    "jobs": {},
}

# job id -> (name, config key, default interval minutes)
PERIODIC_JOBS = {
    "execute_runs": ("Execute Scheduled Runs", "execute_runs_interval_minutes", 1),
    "retry_stuck": ("Retry Stuck Runs", "retry_stuck_interval_minutes", 10),
    "exit_sweep": ("Exit Sweep", "exit_sweep_interval_minutes", 5),
    "incremental_sync": ("Incremental Task Sync", "incremental_sync_interval_minutes", 5),
    "list_memberships": ("List Membership Sync", "list_membership_interval_minutes", 5),
}

# job id -> (name, config key, default hour)
DAILY_JOBS = {
    "owner_sync": ("Owner Sync", "owner_sync_hour", 3),
    "cleanup": ("Sync Execution Cleanup", "cleanup_hour", 4),
}


def load_config():
    """
    Load config.yaml (optional) with environment variables taking precedence.
    Returns None when the service cannot be configured.
    """
    try:
        return load_service_config(str(CONFIG_PATH))
    except (ValueError, OSError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return None


def build_components(cfg) -> None:
    """Wire database, HubSpot client, engine, reactors and sync engine"""
    global service_config, db, hubspot_client, engine, exit_reactor, engagement_reactor, sync_engine

    settings = cfg.automation
    service_config = cfg
    db = TaskCacheDB(cfg.database.get("path", "automation.db"), cfg.database.get("url"))
    hubspot_client = HubSpotClient(
        cfg.hubspot["access_token"],
        base_url=cfg.hubspot.get("base_url", "https://api.hubapi.com"),
        throttle_seconds=cfg.hubspot.get("throttle_seconds", 0.15),
    )
    contacts = ContactSync(db, hubspot_client, settings.get("contact_max_age_minutes", 10))
    engine = AutomationEngine(db, hubspot_client, settings, contacts)
    exit_reactor = ExitReactor(db, hubspot_client, contacts)
    engagement_reactor = EngagementReactor(
        db, hubspot_client, settings.get("min_call_duration_ms", MIN_CALL_DURATION_MS)
    )
    sync_engine = TaskSyncEngine(cfg, db, hubspot_client, engine, exit_reactor, contacts)


async def run_job(job_id: str, fn: Callable[[], Dict[str, Any]]):
    """Background job wrapper: run a blocking job off the event loop and record it"""
    state = scheduler_state["jobs"].setdefault(job_id, {"runs": 0, "last_run": None, "last_error": None})
    try:
        state["last_run"] = datetime.now(timezone.utc).isoformat()
        state["runs"] += 1
        results = await asyncio.get_event_loop().run_in_executor(None, fn)
        state["last_error"] = None
        return results
    except Exception as e:
        logger.error(f"Job {job_id} failed: {e}")
        state["last_error"] = str(e)
        return {"error": str(e)}


# job id -> component it runs on
JOB_COMPONENTS = {
    "execute_runs": "engine",
    "retry_stuck": "engine",
    "exit_sweep": "exit_reactor",
    "incremental_sync": "sync_engine",
    "list_memberships": "sync_engine",
    "owner_sync": "sync_engine",
    "cleanup": "sync_engine",
}


def _job_functions() -> Dict[str, Callable[[], Dict[str, Any]]]:
    return {
        "execute_runs": lambda: engine.execute_scheduled_runs(),
        "retry_stuck": lambda: engine.retry_stuck_runs(),
        "exit_sweep": lambda: exit_reactor.process(),
        "incremental_sync": lambda: sync_engine.run_incremental_sync("scheduler"),
        "list_memberships": lambda: sync_engine.sync_list_memberships(),
        "owner_sync": lambda: sync_engine.sync_owners(),
        "cleanup": lambda: sync_engine.cleanup_executions(),
    }


def update_scheduler_next_runs():
    """Update next run times in scheduler state"""
    if scheduler and scheduler.running:
        for job in scheduler.get_jobs():
            state = scheduler_state["jobs"].setdefault(job.id, {"runs": 0, "last_run": None, "last_error": None})
            state["next_run"] = job.next_run_time.isoformat() if job.next_run_time else None


def start_scheduler(cfg) -> None:
    global scheduler

    try:
        scheduler = AsyncIOScheduler()
        functions = _job_functions()
        sync_settings = cfg.sync

        for job_id, (name, key, default) in PERIODIC_JOBS.items():
            interval = sync_settings.get(key, default)
            scheduler.add_job(
                run_job,
                IntervalTrigger(minutes=interval),
                args=[job_id, functions[job_id]],
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

        for job_id, (name, key, default) in DAILY_JOBS.items():
            scheduler.add_job(
                run_job,
                CronTrigger(hour=sync_settings.get(key, default), minute=0),
                args=[job_id, functions[job_id]],
                id=job_id,
                name=name,
                replace_existing=True,
            )

        scheduler.start()
        scheduler_state["enabled"] = True
        update_scheduler_next_runs()
        logger.info(f"✓ Background scheduler started ({len(scheduler.get_jobs())} jobs)")
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        scheduler_state["enabled"] = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown"""
    # Startup
    if ENGINE_AVAILABLE:
        cfg = load_config()
        if cfg is not None:
            try:
                build_components(cfg)
                logger.info("✓ Automation engine initialized")
            except Exception as e:
                logger.error(f"Failed to initialize automation engine: {e}")

    if SCHEDULER_AVAILABLE and engine:
        start_scheduler(service_config)

    logger.info("✓ Task automation server started")

    yield

    # Shutdown
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("✓ Scheduler shut down")


# Initialize FastAPI app with lifespan
app = FastAPI(
    title="HubSpot Task Automation",
    description="Working-hours aware task automation for HubSpot queues",
    version=VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models
class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str


Identifier = Union[int, str]


class TriggerRequest(BaseModel):
    trigger_type: str
    automation_id: Optional[Identifier] = None
    # list_entry
    contact_id: Optional[Identifier] = None
    hs_contact_id: Optional[Identifier] = None
    list_id: Optional[Identifier] = None
    hs_list_id: Optional[Identifier] = None
    membership_id: Optional[Identifier] = None
    hs_membership_id: Optional[Identifier] = None
    # task_completion
    task_id: Optional[Identifier] = None
    current_position: Optional[Identifier] = None
    completion_date: Optional[Identifier] = None
    associated_contact_id: Optional[Identifier] = None
    hubspot_owner_id: Optional[Identifier] = None
    hs_queue_id: Optional[Identifier] = None
    # schedule override
    schedule_enabled: Optional[bool] = None
    schedule_configuration: Optional[Union[Dict[str, Any], str]] = None
    timezone: Optional[str] = None


ID_FIELDS = ("automation_id", "contact_id", "hs_contact_id", "list_id", "hs_list_id", "membership_id",
             "hs_membership_id", "task_id", "associated_contact_id", "hubspot_owner_id", "hs_queue_id")


class AutomationUpdate(BaseModel):
    name: Optional[str] = None
    task_category_id: Optional[int] = None
    automation_enabled: Optional[bool] = None
    hs_list_id: Optional[str] = None
    first_task_creation: Optional[bool] = None
    sequence_enabled: Optional[bool] = None
    sequence_exit_enabled: Optional[bool] = None
    auto_complete_on_exit_enabled: Optional[bool] = None
    auto_complete_on_engagement: Optional[bool] = None
    schedule_enabled: Optional[bool] = None
    schedule_configuration: Optional[Dict[str, Any]] = None
    timezone: Optional[str] = None
    tasks_configuration: Optional[Dict[str, Any]] = None


class TaskCategoryUpdate(BaseModel):
    label: str
    hs_queue_id: Optional[str] = None


def not_configured() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"success": False, "message": "Automation engine not configured"}
    )


def verify_cron_auth(authorization: Optional[str]) -> bool:
    """Verify cron request authorization"""
    cron_secret = os.environ.get('CRON_SECRET')
    if cron_secret and authorization != f"Bearer {cron_secret}":
        return False
    return True


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(),
        version=VERSION
    )


@app.get("/api/status")
async def service_status():
    """Diagnose engine initialization and HubSpot reachability"""
    hubspot_connected = False
    if hubspot_client:
        hubspot_connected = await asyncio.get_event_loop().run_in_executor(None, hubspot_client.test_connection)
    return {
        "engine_available": ENGINE_AVAILABLE,
        "engine_import_error": ENGINE_IMPORT_ERROR,
        "engine_initialized": engine is not None,
        "config_yaml_exists": CONFIG_PATH.exists(),
        "is_vercel": IS_VERCEL,
        "hubspot_client_ready": hubspot_client is not None,
        "hubspot_connected": hubspot_connected,
        "db_initialized": db is not None,
        "environment": service_config.environment if service_config else None,
    }


# ============================================
# AUTOMATION ENDPOINTS
# ============================================

@app.post("/api/automation/trigger")
async def automation_trigger(request: TriggerRequest):
    """
    Trigger processor: list entry plans the initial task, task completion
    plans the next task of the sequence.
    """
    if not engine:
        return not_configured()

    payload = request.model_dump(exclude_none=True)
    for key in ID_FIELDS:
        if key in payload:
            payload[key] = str(payload[key])

    try:
        return engine.process_trigger(payload)
    except InvalidTriggerError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": str(e)})
    except ScheduledTimeInPastError as e:
        logger.info(f"Trigger for automation {payload.get('automation_id')} is past due: {e}")
        return {
            "success": False,
            "past_due": True,
            "message": str(e),
            "planned_execution_timestamp": to_iso_z(e.planned) if e.planned else None,
        }
    except AutomationError as e:
        return JSONResponse(status_code=422, content={"success": False, "message": str(e)})
    except Exception as e:
        logger.error(f"Automation trigger failed: {e}")
        return JSONResponse(status_code=500, content={"success": False, "message": str(e)})


async def _run_blocking(label: str, fn: Callable[[], Dict[str, Any]]):
    try:
        logger.info(f"🔄 Running {label}...")
        results = await asyncio.get_event_loop().run_in_executor(None, fn)
        logger.info(f"✓ {label} complete")
        return results
    except Exception as e:
        logger.error(f"{label} failed: {e}")
        return JSONResponse(status_code=500, content={"success": False, "message": str(e)})


@app.post("/api/automation/execute-scheduled")
async def execute_scheduled():
    if not engine:
        return not_configured()
    return await _run_blocking("scheduled run execution", engine.execute_scheduled_runs)


@app.post("/api/automation/retry-stuck")
async def retry_stuck():
    """Stuck-run reconciler"""
    if not engine:
        return not_configured()
    return await _run_blocking("stuck run retry", engine.retry_stuck_runs)


@app.post("/api/automation/exit-sweep")
async def exit_sweep():
    """Exit reactor sweep over every automation with exit handling"""
    if not exit_reactor:
        return not_configured()
    return await _run_blocking("exit sweep", exit_reactor.process)


@app.get("/api/automation/runs")
async def list_automation_runs(limit: int = 100, automation_id: Optional[str] = None,
                               type: Optional[str] = None, successful: Optional[bool] = None):
    if not db:
        return not_configured()
    runs = db.list_runs(limit=limit, automation_id=automation_id, run_type=type, successful=successful)
    return {"success": True, "count": len(runs), "runs": runs}


@app.get("/api/automations")
async def list_automations():
    if not db:
        return not_configured()
    return {"success": True, "automations": db.list_automation_rows()}


@app.put("/api/automations/{automation_id}")
async def update_automation(automation_id: str, update: AutomationUpdate):
    if not db:
        return not_configured()

    existing = db.get_automation_row(automation_id) or {}
    changes = update.model_dump(exclude_none=True)
    merged = {**existing, **changes, "id": automation_id}
    try:
        automation = AutomationDefinition.from_row(merged)
    except ConfigurationError as e:
        return JSONResponse(status_code=422, content={"success": False, "message": str(e)})
    db.upsert_automation(merged)
    logger.info(f"✓ Automation {automation_id} saved ({', '.join(sorted(changes)) or 'no changes'})")
    return {"success": True, "automation_id": automation_id, "total_tasks": automation.total_tasks}


@app.put("/api/task-categories/{category_id}")
async def update_task_category(category_id: int, update: TaskCategoryUpdate):
    if not db:
        return not_configured()
    db.upsert_task_category(category_id, update.label, update.hs_queue_id)
    return {"success": True, "category_id": category_id}


# ============================================
# WEBHOOKS
# ============================================

@app.post("/api/webhook/hubspot")
async def hubspot_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Webhook endpoint for HubSpot notifications. Call creations complete
    automation tasks, task deletions update the cache.
    """
    if not engagement_reactor:
        return not_configured()

    try:
        body = await request.json()
    except ValueError as e:
        return JSONResponse(status_code=400, content={"success": False, "message": f"Invalid JSON: {e}"})

    events = body if isinstance(body, list) else [body]
    logger.info(f"📥 Received {len(events)} HubSpot webhook events")
    background_tasks.add_task(route_webhook_events, events, engagement_reactor, db)
    return {"success": True, "message": f"Queued {len(events)} events"}


# ============================================
# SYNC ENDPOINTS
# ============================================

@app.post("/api/sync/incremental")
async def sync_incremental():
    if not sync_engine:
        return not_configured()
    return await _run_blocking("incremental sync", lambda: sync_engine.run_incremental_sync("manual"))


@app.post("/api/sync/list-memberships")
async def sync_list_memberships():
    if not sync_engine:
        return not_configured()
    return await _run_blocking("list membership sync", sync_engine.sync_list_memberships)


@app.post("/api/sync/owners")
async def sync_owners():
    if not sync_engine:
        return not_configured()
    return await _run_blocking("owner sync", sync_engine.sync_owners)


@app.get("/api/executions")
async def list_executions(limit: int = 50):
    if not db:
        return not_configured()
    return {"success": True, "executions": db.list_executions(limit)}


@app.get("/api/executions/{execution_id}")
async def get_execution(execution_id: str):
    if not db:
        return not_configured()
    execution = db.get_execution(execution_id)
    if not execution:
        return JSONResponse(status_code=404, content={"success": False, "message": "Execution not found"})
    return {"success": True, "execution": execution}


@app.get("/api/scheduler/status")
async def get_scheduler_status():
    """Get current scheduler status and next run times"""
    update_scheduler_next_runs()

    return {
        "success": True,
        "scheduler": {
            "available": SCHEDULER_AVAILABLE,
            "running": scheduler.running if scheduler else False,
            **scheduler_state
        }
    }


# ============================================
# VERCEL CRON JOB ENDPOINTS
# These are called by Vercel's cron scheduler instead of APScheduler
# ============================================

async def _cron(job: str, authorization: Optional[str], fn_name: str):
    if not verify_cron_auth(authorization):
        logger.warning(f"Unauthorized cron request for {job}")
        return JSONResponse(status_code=401, content={"success": False, "message": "Unauthorized"})

    if globals()[JOB_COMPONENTS[fn_name]] is None:
        return not_configured()

    return await _run_blocking(f"cron {job}", _job_functions()[fn_name])


@app.get("/api/cron/execute-runs")
async def cron_execute_runs(authorization: Optional[str] = Header(None)):
    """Schedule: * * * * * (every minute)"""
    return await _cron("execute-runs", authorization, "execute_runs")


@app.get("/api/cron/retry-stuck")
async def cron_retry_stuck(authorization: Optional[str] = Header(None)):
    """Schedule: */10 * * * *"""
    return await _cron("retry-stuck", authorization, "retry_stuck")


@app.get("/api/cron/exit-sweep")
async def cron_exit_sweep(authorization: Optional[str] = Header(None)):
    """Schedule: */5 * * * *"""
    return await _cron("exit-sweep", authorization, "exit_sweep")


@app.get("/api/cron/incremental-sync")
async def cron_incremental_sync(authorization: Optional[str] = Header(None)):
    """Schedule: */5 * * * *"""
    if not verify_cron_auth(authorization):
        logger.warning("Unauthorized cron request for incremental-sync")
        return JSONResponse(status_code=401, content={"success": False, "message": "Unauthorized"})
    if not sync_engine:
        return not_configured()
    return await _run_blocking("cron incremental-sync", lambda: sync_engine.run_incremental_sync("cron"))


@app.get("/api/cron/list-memberships")
async def cron_list_memberships(authorization: Optional[str] = Header(None)):
    """Schedule: */5 * * * *"""
    return await _cron("list-memberships", authorization, "list_memberships")


@app.get("/api/cron/cleanup")
async def cron_cleanup(authorization: Optional[str] = Header(None)):
    """Schedule: 0 4 * * * (daily)"""
    return await _cron("cleanup", authorization, "cleanup")


# Create a simple startup script
def start_server():
    """Start the server manually"""
    import uvicorn
    print("📋 Starting HubSpot Task Automation service...")
    print("📖 API Documentation at: http://localhost:8004/docs")
    print("Press Ctrl+C to stop the server")
    try:
        uvicorn.run(app, host="0.0.0.0", port=8004)
    except KeyboardInterrupt:
        print("\n👋 Server stopped")


if __name__ == "__main__":
    start_server()
