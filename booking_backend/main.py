import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking_backend.core import config
from booking_backend.core.errors import BookingServiceError, booking_service_error_handler
from booking_backend.database import Base, engine, ensure_booking_schema
from booking_backend.models import booking, slot, user  # noqa: F401  (register tables)
from booking_backend.routes import auth_routes, booking_routes, slot_routes

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title='Appointment Booking API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.add_exception_handler(BookingServiceError, booking_service_error_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            'error': 'validation_error',
            'reason': 'invalid_request',
            'message': 'Request is invalid.',
            'details': jsonable_encoder(exc.errors()),
        },
    )


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Appointment Booking API Running'}


app.include_router(auth_routes.router, prefix='/api')
app.include_router(slot_routes.router, prefix='/api')
app.include_router(booking_routes.router, prefix='/api')
