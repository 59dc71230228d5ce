import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.lock_utils import ChatLockManager

# Database
from database.flow_db import FlowDB

# Internal Services
from services.internal.http_request_service import HttpRequestService
from services.internal.openai_service import OpenAIService
from services.internal.agent_service import AgentService

# Services
from services.node_type_registry import NodeTypeRegistry
from services.flow_graph_service import FlowGraphService
from services.variable_service import VariableService
from services.condition_evaluation_service import ConditionEvaluationService
from services.trigger_evaluation_service import TriggerEvaluationService
from services.message_dispatch_service import MessageDispatchService
from services.node_execution_service import NodeExecutionService
from services.session_service import SessionService
from services.flow_service import FlowService
from services.event_service import EventService
from services.scheduler_service import SchedulerService

# APIs
from apis.flow_api import create_flow_api
from apis.trigger_api import create_trigger_api
from apis.event_api import create_event_api
from apis.session_api import create_session_api
from apis.node_type_api import create_node_type_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
flow_db = FlowDB(log_util=log_util, environment_utils=environment_utils)

lock_manager = ChatLockManager(
    log_util=log_util,
    flow_db=flow_db,
    lease_ttl_seconds=environment_utils.get_env_variable("CHAT_LOCK_TTL_SECONDS")
)

# Internal Services (external calls made by nodes)
http_request_service = HttpRequestService(
    log_util=log_util,
    timeout_seconds=environment_utils.get_env_variable("HTTP_REQUEST_TIMEOUT_SECONDS")
)
openai_service = OpenAIService(
    log_util=log_util,
    api_url=environment_utils.get_env_variable("OPENAI_API_URL"),
    default_api_key=environment_utils.get_env_variable("OPENAI_API_KEY")
)
agent_service = AgentService(
    log_util=log_util,
    agent_service_url=environment_utils.get_env_variable("AGENT_SERVICE_URL")
)
message_dispatch_service = MessageDispatchService(
    log_util=log_util,
    channel_service_url=environment_utils.get_env_variable("CHANNEL_SERVICE_URL")
)

# Services
node_type_registry = NodeTypeRegistry()
flow_graph_service = FlowGraphService(log_util=log_util)
variable_service = VariableService(log_util=log_util)
condition_evaluation_service = ConditionEvaluationService(
    log_util=log_util,
    variable_service=variable_service
)
trigger_evaluation_service = TriggerEvaluationService(log_util=log_util)

node_execution_service = NodeExecutionService(
    log_util=log_util,
    flow_db=flow_db,
    variable_service=variable_service,
    condition_evaluation_service=condition_evaluation_service,
    http_request_service=http_request_service,
    openai_service=openai_service,
    agent_service=agent_service
)

session_service = SessionService(
    log_util=log_util,
    flow_db=flow_db,
    flow_graph_service=flow_graph_service,
    node_type_registry=node_type_registry,
    variable_service=variable_service,
    node_execution_service=node_execution_service,
    message_dispatch_service=message_dispatch_service,
    max_steps_per_run=environment_utils.get_env_variable("MAX_STEPS_PER_RUN"),
    default_debounce_seconds=environment_utils.get_env_variable("DEBOUNCE_SECONDS")
)

flow_service = FlowService(
    log_util=log_util,
    flow_db=flow_db,
    flow_graph_service=flow_graph_service,
    variable_service=variable_service
)

event_service = EventService(
    log_util=log_util,
    flow_db=flow_db,
    session_service=session_service,
    trigger_evaluation_service=trigger_evaluation_service,
    lock_manager=lock_manager
)

scheduler_service = SchedulerService(
    log_util=log_util,
    flow_db=flow_db,
    session_service=session_service,
    trigger_evaluation_service=trigger_evaluation_service,
    lock_manager=lock_manager,
    check_interval_seconds=environment_utils.get_env_variable("SCHEDULER_INTERVAL_SECONDS"),
    stalled_after_seconds=environment_utils.get_env_variable("STALLED_SESSION_SECONDS")
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_util.info(service_name="FlowService", message="Application startup complete")

    await scheduler_service.start()

    yield

    # Shutdown
    await scheduler_service.stop()

    flow_db.close()
    log_util.info(service_name="FlowService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="interflow flow service",
    description="Chatbot flow runtime: flow graphs, triggers and conversation sessions",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Flow management APIs
app.include_router(create_flow_api(log_util=log_util, flow_service=flow_service))
app.include_router(create_trigger_api(log_util=log_util, flow_service=flow_service))

# Inbound event API (receives messages from channel services)
app.include_router(create_event_api(log_util=log_util, event_service=event_service))

# Session API
app.include_router(create_session_api(
    log_util=log_util,
    session_service=session_service,
    flow_service=flow_service,
    lock_manager=lock_manager
))

# Node type catalog API
app.include_router(create_node_type_api(log_util=log_util, node_type_registry=node_type_registry))

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "flow_service"}

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="FlowService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="FlowService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
