"""
Exam Desk API - Main Application
FastAPI application for authoring, publishing and taking multiple-choice exams,
with integrity tracking, a personal question bank and publish billing.
"""

from dotenv import load_dotenv
load_dotenv()

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from database.database import Base, engine
from routers import auth_teacher, billing, exams, folders, integrity, question_bank, student
from services.errors import ExamError

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables."""
    Base.metadata.create_all(bind=engine)
    log.info("Exam Desk API started")
    yield


app = FastAPI(
    title="Exam Desk API",
    description="Multiple-choice exams with timed attempts, integrity tracking and results",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Error handlers ────────────────────────────────────────────────────────────

@app.exception_handler(ExamError)
async def exam_error_handler(request: Request, exc: ExamError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid input")
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": f"{location}: {message}" if location else message,
            "code": "VALIDATION_ERROR",
        },
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    # Storage details stay in the log, never in the response
    log.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Something went wrong", "code": "SERVER_ERROR"},
    )


# ─── Routers ───────────────────────────────────────────────────────────────────

app.include_router(auth_teacher.router)     # /auth/teacher/*
app.include_router(exams.router)            # /exams/*
app.include_router(student.router)          # /exam/* (public)
app.include_router(integrity.router)        # /integrity/*
app.include_router(question_bank.router)    # /question-bank/*
app.include_router(folders.router)          # /folders/*
app.include_router(billing.router)          # /billing/*


@app.get("/")
def root():
    return {
        "message": "Exam Desk API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
