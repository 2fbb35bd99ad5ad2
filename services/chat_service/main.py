from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from database import init_db
from errors import ChatError
from routes import router
from gateway import router as gateway_router
import auth
import logging
import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = FastAPI(
    title="Chat Service API",
    description="Realtime chat microservice: conversations, messages and presence",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.include_router(router)
app.include_router(gateway_router)


@app.on_event("startup")
async def startup_event():
    init_db()
    auth.warn_if_unverified()


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "chat-service",
        "auth": "unverified" if auth.SOFT_FAIL else "verified",
    }
