import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paygate.admin.routes import admin_router
from paygate.api.payment_router import router as payment_router
from paygate.db.session import SessionLocal, init_models
from paygate.logging_config import setup_logging
from paygate.services.payment.alerts import AlertSink
from paygate.services.payment.engine import PaymentEngine
from paygate.services.payment.errors import PaymentError
from paygate.services.payment.jobs import start_scheduler
from paygate.settings import PaymentSettings
from telegram_bot.notify import send_ops_alert

setup_logging("paygate")

settings = PaymentSettings.from_env()
app = FastAPI(title="paygate")
app.state.payment_engine = PaymentEngine(SessionLocal, settings, AlertSink(send_ops_alert))
app.state.scheduler = None

# Подключаем роутеры
app.include_router(payment_router, prefix="/api")
app.include_router(admin_router)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logging.warning(
        "Payment request failed: %s",
        exc.message,
        extra={"category": "PAYMENT_API", "path": request.url.path, "error": type(exc).__name__},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup():
    await init_models()
    engine = app.state.payment_engine
    await engine.initialize()
    if settings.jobs_enabled:
        app.state.scheduler = start_scheduler(engine, settings)
    logging.info("paygate started", extra={"category": "PAYMENT_ENGINE"})


@app.on_event("shutdown")
async def shutdown():
    if app.state.scheduler is not None:
        app.state.scheduler.shutdown(wait=False)
        app.state.scheduler = None
    await app.state.payment_engine.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}
