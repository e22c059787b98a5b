"""FastAPI entrypoint for the directive ranker."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from config import RankerConfig
from models import (
    CacheStatsResponse,
    DeleteDirectivesRequest,
    DetectContextRequest,
    DetectContextResponse,
    QueryDirectivesRequest,
    QueryDirectivesResponse,
    UpsertDirectivesRequest,
    WarmCacheRequest,
)
from services import DirectiveService

config = RankerConfig.from_env()
logging.basicConfig(
    level=config.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

directive_service = DirectiveService.from_config(config)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    directive_service.shutdown()
    logger.info("Directive caches destroyed")


app = FastAPI(
    title="Directive Ranker",
    description="Context-aware directive ranking API",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["health"])
async def root():
    return {"status": "ok", "message": "Directive ranker is running"}


@app.get("/health", tags=["health"])
async def health():
    return {
        "status": "ok",
        "directives": directive_service.store.count(),
        "context_provider": directive_service.provider.name,
    }


@app.post("/detect-context", response_model=DetectContextResponse, tags=["context"])
async def detect_context(request: DetectContextRequest):
    if not request.text.strip():
        raise HTTPException(status_code=400, detail="text must not be empty")
    try:
        detected = await asyncio.to_thread(
            directive_service.detect_context, request.text, request.return_keywords
        )
        return DetectContextResponse(
            detected_layer=detected.layer,
            topics=detected.topics,
            technologies=detected.technologies,
            keywords=detected.keywords,
            confidence=detected.confidence,
            provider=detected.provider,
        )
    except Exception as exc:
        logger.exception("Context detection failed")
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/query-directives", response_model=QueryDirectivesResponse, tags=["directives"])
async def query_directives(request: QueryDirectivesRequest):
    if not request.task_description.strip():
        raise HTTPException(status_code=400, detail="task_description must not be empty")
    try:
        return await asyncio.to_thread(directive_service.query_directives, request)
    except Exception as exc:
        logger.exception("Directive query failed")
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/directives", tags=["directives"])
async def upsert_directives(request: UpsertDirectivesRequest):
    try:
        result = directive_service.upsert_directives(d.to_directive() for d in request.directives)
        return {"success": True, **result}
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.post("/directives/delete", tags=["directives"])
async def delete_directives(request: DeleteDirectivesRequest):
    try:
        deleted = directive_service.delete_directives(request.ids)
        return {"success": True, "deleted": deleted}
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@app.get("/admin/cache-stats", response_model=CacheStatsResponse, tags=["admin"])
async def cache_stats():
    return directive_service.cache_stats()


@app.post("/admin/cache/clear", tags=["admin"])
async def clear_cache():
    directive_service.clear_caches()
    return {"success": True}


@app.post("/admin/warmup", tags=["admin"])
async def warmup(request: WarmCacheRequest = WarmCacheRequest()):
    try:
        warmed = await asyncio.to_thread(directive_service.warm_cache, request.tasks, request.contexts)
        return {"success": True, "warmed": warmed}
    except Exception as exc:
        logger.exception("Cache warmup failed")
        raise HTTPException(status_code=500, detail=str(exc))


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
