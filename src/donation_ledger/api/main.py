from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum
from starlette.exceptions import HTTPException as StarletteHTTPException

from donation_ledger.api import routers
from donation_ledger.core.logging_config import configure_logging

configure_logging()


def create_app() -> FastAPI:
    app = FastAPI(title="Donation Ledger")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify your frontend domain(s)
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Every error body has the shape {"error": "..."}
    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    # Unparseable or mistyped request bodies are reported like missing ones
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Missing required parameters"})

    @app.get("/")
    def read_root():
        return {"message": "Welcome to the Donation Ledger API"}

    app.include_router(routers.router)
    return app


app = create_app()

# API Gateway stage prefix is stripped before routing
handler = Mangum(app, api_gateway_base_path="/Prod")
