import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from voucher_system.config import settings
from voucher_system.database import Base, engine
from voucher_system.jobs.scheduler import start_scheduler, stop_scheduler
from voucher_system.vouchers.exceptions import VoucherError, VoucherValidationError
from voucher_system.vouchers.router import router as vouchers_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Booking voucher issuance, verification and redemption API",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(VoucherError)
async def voucher_error_handler(request: Request, exc: VoucherError):
    """Domain errors become {kind, detail} with the error's HTTP status"""
    logger.info(f"{request.method} {request.url.path} -> {exc.kind}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request input answers with the same {kind, detail} shape"""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    error = VoucherValidationError(problems or "Invalid request")
    logger.info(f"{request.method} {request.url.path} -> {error.kind}: {error.detail}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())

# Include routers
app.include_router(
    vouchers_router,
    prefix=f"{settings.API_V1_STR}/vouchers",
    tags=["Vouchers"]
)

@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    logger.info(f"{settings.PROJECT_NAME} started ({settings.ENVIRONMENT})")

@app.on_event("shutdown")
def on_shutdown():
    if settings.SCHEDULER_ENABLED:
        stop_scheduler()

@app.get("/")
def root():
    """Root endpoint"""
    return {
        "message": settings.PROJECT_NAME,
        "version": "1.0.0",
        "docs": "/docs"
    }

@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
