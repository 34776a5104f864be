import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from supply_portal.errors import StoreUnavailable, SupplyError
from supply_portal.logging_setup import configure_logging
from supply_portal.routers import discrepancies, notifications, orders
from supply_portal.security.claims import install_claim_middleware
from supply_portal.security.headers import install_request_headers

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title='Supply Orders Portal')

install_claim_middleware(app)
install_request_headers(app)

app.include_router(orders.router)
app.include_router(discrepancies.router)
app.include_router(notifications.router)


def _error_response(exc: SupplyError) -> JSONResponse:
    return JSONResponse(jsonable_encoder(exc.to_dict()), status_code=exc.status_code)


@app.exception_handler(SupplyError)
async def supply_error_handler(request: Request, exc: SupplyError):
    logger.info('%s: %s', exc.code, exc.message, extra={'endpoint': request.url.path, 'status_code': exc.status_code})
    return _error_response(exc)


@app.exception_handler(DBAPIError)
async def store_error_handler(request: Request, exc: DBAPIError):
    logger.exception('Store failure', extra={'endpoint': request.url.path})
    return _error_response(StoreUnavailable('Order store unavailable, retry later'))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        jsonable_encoder({'error': 'Invalid request body', 'code': 'VALIDATION_ERROR', 'details': exc.errors()}),
        status_code=400,
    )


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
