import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from backend.core import config
from backend.database import Base, engine, ensure_availability_schema, ensure_appointment_schema
from backend.errors import SchedulingError, StorageError
from backend.models import appointment, availability, invoice, notification, user  # noqa: F401
from backend.routes import admin_routes, appointment_routes, availability_routes

logging.basicConfig(level=config.LOG_LEVEL)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.exception_handler(SchedulingError)
async def handle_scheduling_error(request: Request, exc: SchedulingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error('%s %s failed: %s', request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={'detail': exc.message})


@app.exception_handler(SQLAlchemyError)
async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error('%s %s hit a database error', request.method, request.url.path, exc_info=exc)
    return await handle_scheduling_error(request, StorageError('Database unavailable. Please try again.'))


@app.get('/')
def root():
    return {'status': 'Clinic Scheduling API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
app.include_router(admin_routes.router, prefix='/admin')
