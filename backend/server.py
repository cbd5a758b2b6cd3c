"""
Bill Workflow Hub - Main Server

Routes are organized in /routes/, business logic in /services/.
"""

from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import os
import logging

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import workflows, reports

# ==================== SERVICES ====================
from services.master_data import MongoMasterDataLookup
from services.stores import (
    BILLS_COLLECTION, TRANSITIONS_COLLECTION, MongoBillStore, MongoTransitionLog
)
from services.workflow_config import load_workflow_config
from services.workflow_engine import WorkflowEngine

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "bill_workflow")

SERVICE_NAME = "Bill Workflow Hub"
SERVICE_VERSION = "1.0.0"

db = None
mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    # Startup
    logger.info("Starting %s...", SERVICE_NAME)

    # Connect to MongoDB
    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    # Wire collaborators into the engine and routers
    bill_store = MongoBillStore(db)
    master_data = MongoMasterDataLookup(db)
    engine = WorkflowEngine(
        bill_store=bill_store,
        transition_log=MongoTransitionLog(db),
        config=load_workflow_config(),
        master_data=master_data,
    )
    workflows.set_dependencies(engine)
    reports.set_dependencies(bill_store, master_data)

    # Create indexes
    await create_indexes()

    logger.info("%s started successfully (db=%s)", SERVICE_NAME, DB_NAME)

    yield

    # Shutdown
    logger.info("Shutting down %s...", SERVICE_NAME)
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    # Bills
    await db[BILLS_COLLECTION].create_index("id", unique=True)
    await db[BILLS_COLLECTION].create_index("workflow_state.current_state")

    # Transition log
    await db[TRANSITIONS_COLLECTION].create_index([("bill_id", 1), ("created_at", 1)])
    await db[TRANSITIONS_COLLECTION].create_index("from_user.id")

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title=SERVICE_NAME,
    description="Role-to-role bill hand-offs, audit trail and stage reports",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

# Include route modules
api_router.include_router(workflows.router)
api_router.include_router(reports.router)

# Mount to app
app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "bill-workflow-hub"
    }
