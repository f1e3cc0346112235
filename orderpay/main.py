from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderpay.api import orders, payments
from orderpay.config import settings
from orderpay.database import Base, engine
from orderpay.errors import OrderPayError
from orderpay.utils.logging import configure_logging, logger

configure_logging(settings.LOG_LEVEL, json=settings.LOG_JSON)

app = FastAPI(title="Order & Payment Service")

app.include_router(orders.router)
app.include_router(payments.router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(OrderPayError)
async def orderpay_error_handler(request: Request, exc: OrderPayError):
    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, code=exc.code, error=exc.message)
    content = {"detail": exc.message, "code": exc.code}
    if exc.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
def health():
    return {"status": "ok"}
