"""
FastAPI routes for knowledge base operations.

Provides HTTP endpoints for uploading, listing, updating and deleting
knowledge base files, per-character stats, retrieval testing and memory item
feedback. The caller is identified by the `X-User-Id` header.
"""

from typing import List, Literal, NoReturn, Optional

from fastapi import APIRouter, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .conversations.rag_context import build_rag_context
from .knowledge_base.effective_config import GlobalRagSource, RequestRagSource
from .knowledge_base.errors import KnowledgeBaseError
from .knowledge_base.models import FeedbackAction
from .service_context import ServiceContext


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileUpdateRequest(_CamelRequest):
    """Request body for PATCH /knowledge-base/{file_id}."""

    action: Optional[Literal["pause", "resume", "reindex", "updateTags"]] = None
    tags: Optional[List[str]] = None


class FeedbackRequest(_CamelRequest):
    action: FeedbackAction


class RetrievalRequest(_CamelRequest):
    """Request body for testing retrieval."""

    query: str
    character_id: Optional[str] = None
    rag_mode: Optional[str] = None
    tag_filters: Optional[List[str]] = None


def _dump(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def _raise_http(e: Exception, what: str) -> NoReturn:
    if isinstance(e, KnowledgeBaseError):
        if e.http_status >= 500:
            logger.error(f"❌ {what} failed: {e.message}")
        raise HTTPException(status_code=e.http_status, detail=e.message)
    logger.exception(f"❌ {what} failed: {e}")
    raise HTTPException(status_code=500, detail=f"{what} failed: {str(e)}")


def _require_user(x_user_id: Optional[str]) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def init_kb_routes(context: ServiceContext) -> APIRouter:
    """
    Create and return API routes for knowledge base operations.

    Args:
        context: Service context holding the knowledge base services

    Returns:
        APIRouter: Configured router with KB and memory item endpoints
    """
    router = APIRouter(prefix="/api", tags=["knowledge_base"])
    manager = context.manager

    @router.post("/knowledge-base/upload")
    async def upload_file(
        file: UploadFile = File(...),
        character_id: Optional[str] = Form(None, alias="characterId"),
        tags: Optional[str] = Form(None),
        x_user_id: Optional[str] = Header(None),
    ):
        """
        Upload a file to a knowledge base and start indexing it.

        Returns:
            The file record plus the job id (queued) or the indexing result
        """
        user_id = _require_user(x_user_id)
        try:
            content = await file.read()
            result = await manager.upload_file(
                user_id=user_id,
                file_name=file.filename or "",
                content=content,
                character_id=character_id,
                tags=tags,
            )
            return JSONResponse(status_code=201, content=_dump(result))
        except Exception as e:
            _raise_http(e, "Upload")

    @router.get("/knowledge-base")
    async def list_files(
        character_id: Optional[str] = Query(None, alias="characterId"),
        x_user_id: Optional[str] = Header(None),
    ):
        user_id = _require_user(x_user_id)
        try:
            files = await manager.list_files(user_id, character_id)
            return JSONResponse(
                status_code=200,
                content={"files": [_dump(f) for f in files], "count": len(files)},
            )
        except Exception as e:
            _raise_http(e, "List")

    @router.get("/knowledge-base/stats")
    async def get_stats(
        character_id: str = Query(..., alias="characterId"),
        x_user_id: Optional[str] = Header(None),
    ):
        """Get statistics about a character's knowledge base."""
        _require_user(x_user_id)
        try:
            stats = await manager.get_stats(character_id)
            return JSONResponse(status_code=200, content=_dump(stats))
        except Exception as e:
            _raise_http(e, "Stats")

    @router.post("/knowledge-base/test-retrieval")
    async def test_retrieval(request: RetrievalRequest, x_user_id: Optional[str] = Header(None)):
        """
        Test retrieval with a query (for debugging/testing).

        Returns:
            Effective RAG config, retrieved memories and the formatted prompt block
        """
        user_id = _require_user(x_user_id)
        try:
            rag = await build_rag_context(
                context.retriever,
                user_id=user_id,
                query=request.query,
                character_id=request.character_id,
                request=RequestRagSource(
                    rag_mode=request.rag_mode, tag_filters=request.tag_filters
                ),
                global_config=GlobalRagSource(
                    rag_mode=context.config.retrieval.default_mode,
                    tag_filters=context.config.retrieval.tag_filters,
                ),
            )
            return JSONResponse(
                status_code=200,
                content={
                    "query": request.query,
                    "effective": _dump(rag.effective) if rag.effective else None,
                    "memories": [_dump(m) for m in rag.memories],
                    "count": len(rag.memories),
                    "formattedContext": rag.formatted,
                },
            )
        except Exception as e:
            _raise_http(e, "Retrieval")

    @router.get("/knowledge-base/{file_id}")
    async def get_file(file_id: str, x_user_id: Optional[str] = Header(None)):
        """Get a single knowledge base file with its chunk count."""
        user_id = _require_user(x_user_id)
        try:
            detail = await manager.get_file(file_id, user_id)
            return JSONResponse(status_code=200, content=_dump(detail))
        except Exception as e:
            _raise_http(e, "Fetch")

    @router.patch("/knowledge-base/{file_id}")
    async def update_file(
        file_id: str, request: FileUpdateRequest, x_user_id: Optional[str] = Header(None)
    ):
        """
        Pause, resume, reindex or retag a file.

        Reindex answers 202 with the new `jobId` (`reindex: "queued"`). Without
        a job queue it indexes inline and answers 200 with the `indexing` result
        (`reindex: "indexed"`); if a reindex is already in progress it answers
        200 with `jobId: null` and `reindex: "in_progress"`.
        """
        user_id = _require_user(x_user_id)
        try:
            if request.action == "reindex":
                outcome = await manager.reindex_file(file_id, user_id)
                body = {
                    **_dump(outcome.file),
                    "jobId": outcome.job_id,
                    "reindex": outcome.outcome,
                }
                if outcome.started:
                    return JSONResponse(status_code=202, content={**body, "chunkCount": 0})
                if outcome.indexing is not None:
                    body["indexing"] = _dump(outcome.indexing)
                if outcome.message:
                    body["message"] = outcome.message
                return JSONResponse(status_code=200, content=body)

            if request.action == "pause":
                await manager.pause_file(file_id, user_id)
            elif request.action == "resume":
                await manager.resume_file(file_id, user_id)
            elif request.action == "updateTags":
                if request.tags is None:
                    raise HTTPException(status_code=400, detail="Tags must be an array")
                await manager.update_tags(file_id, user_id, request.tags)

            if request.action != "updateTags" and request.tags is not None:
                await manager.update_tags(file_id, user_id, request.tags)

            detail = await manager.get_file(file_id, user_id)
            return JSONResponse(status_code=200, content=_dump(detail))
        except HTTPException:
            raise
        except Exception as e:
            _raise_http(e, "Update")

    @router.delete("/knowledge-base/{file_id}")
    async def delete_file(
        file_id: str,
        hard: bool = Query(False, description="Permanently delete file and embeddings"),
        x_user_id: Optional[str] = Header(None),
    ):
        """Soft delete (pause) or, with `hard=true`, permanently delete a file."""
        user_id = _require_user(x_user_id)
        try:
            deleted_chunks = await manager.delete_file(file_id, user_id, hard=hard)
            if hard:
                content = {"success": True, "deletedChunks": deleted_chunks}
            else:
                content = {"success": True, "softDeleted": True}
            return JSONResponse(status_code=200, content=content)
        except Exception as e:
            _raise_http(e, "Delete")

    @router.post("/memory-items/{item_id}/feedback")
    async def memory_feedback(
        item_id: str, request: FeedbackRequest, x_user_id: Optional[str] = Header(None)
    ):
        """Apply exclude / lower_priority / restore feedback to a memory item."""
        user_id = _require_user(x_user_id)
        try:
            await context.feedback.apply_feedback(item_id, request.action, user_id)
            return JSONResponse(
                status_code=200, content={"success": True, "action": request.action}
            )
        except Exception as e:
            _raise_http(e, "Feedback")

    return router
