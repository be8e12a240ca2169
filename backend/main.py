"""
FastAPI Backend for the Task Implementation Engine

Turns a task description into a reviewed, verified and reversible set of
project changes.

API Structure:
- /api/implementations - Start an implementation
- /api/implementations/{task_id} - Progress
- /api/implementations/{task_id}/approve|refine|cancel|rollback - Control
- /api/implementations/{task_id}/events - SSE event stream
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import HOST, PORT, CORS_ORIGINS, LOG_LEVEL
from routers import implementations

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Initialize FastAPI app
app = FastAPI(
    title="Task Implementation Engine API",
    description="AI-assisted planning and execution of project tasks",
    version="1.0.0"
)

# CORS middleware (outermost - handles CORS headers)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(implementations.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Task Implementation Engine API",
        "version": "1.0.0",
        "endpoints": {
            "implementations": "/api/implementations",
            "events": "/api/implementations/{task_id}/events",
        },
        "docs": "/docs"
    }


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    print(f"""
    ╔════════════════════════════════════════════════════╗
    ║  Task Implementation Engine API                    ║
    ╚════════════════════════════════════════════════════╝

    🚀 Starting server...
    📡 API: http://{HOST}:{PORT}
    📖 Docs: http://{HOST}:{PORT}/docs

    Endpoints:
    - POST /api/implementations - Start an implementation
    - POST /api/implementations/{{task_id}}/approve - Approve the plan
    - GET  /api/implementations/{{task_id}}/events - SSE event stream

    Press Ctrl+C to stop
    """)

    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL.lower()
    )
