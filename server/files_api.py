from fastapi import FastAPI, Body, Depends, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from contextlib import asynccontextmanager
from typing import List, Optional
import datetime
import logging

from config.settings import AppConfig
from observability.logging import setup_logging
from observability.prometheus_metrics import setup_prometheus_metrics
from services.shared.exceptions import NotFoundError, PipelineError
from services.shared.incremental import IncrementalProcessor
from services.shared.repository import FilesRepository

from . import file_handlers
from .file_handlers import UploadedFile
from .watcher import Watcher, WatcherOptions

logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    path: Optional[str] = None
    name: Optional[str] = None


class WatchRunRequest(BaseModel):
    path: Optional[str] = None


class ReindexRequest(BaseModel):
    overrideText: Optional[str] = None


def _failure(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "message": message}, status_code=status_code)


def get_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_repository(request: Request) -> FilesRepository:
    return request.app.state.repository


def get_processor(request: Request) -> IncrementalProcessor:
    return request.app.state.processor


def get_watcher(request: Request) -> Watcher:
    return request.app.state.watcher


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the API with its repository, processor and watcher."""
    config = config or AppConfig.from_env()

    repository = FilesRepository.from_config(config.database)
    processor = IncrementalProcessor(repository)
    watcher = Watcher(repository, processor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize logging and the schema, start the watcher, clean up on exit."""
        setup_logging(config.logging, service_name=config.service_name)
        try:
            await repository.initialize()
            logger.info(f"Repository initialized: {repository.engine.url.render_as_string(hide_password=True)}")
        except Exception as e:
            logger.error(f"Failed to initialize application: {e}")
            raise

        if config.watch.enabled:
            try:
                watcher.start(WatcherOptions.from_config(config.watch))
            except PipelineError as e:
                logger.warning(f"Watcher not started: {e.message}")

        yield

        watcher.stop()
        try:
            await repository.close()
        except Exception as e:
            logger.error(f"Error closing repository: {e}")

    app = FastAPI(title="docsync API", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.repository = repository
    app.state.processor = processor
    app.state.watcher = watcher

    setup_prometheus_metrics(app)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return _failure(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _failure(f"Invalid request: {exc.errors()}", 400)

    @app.get("/health")
    def health():
        return {"ok": True, "time": datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")}

    @app.post("/files/register")
    async def register(req: Optional[RegisterRequest] = Body(default=None),
                       cfg: AppConfig = Depends(get_config),
                       repo: FilesRepository = Depends(get_repository)):
        """Register an existing on-disk file so the watcher tracks it."""
        req = req or RegisterRequest()
        try:
            return await file_handlers.register_file(repo, req.path, cfg.watch.root_path, name=req.name)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Register file failed: {e}")
            return _failure("Registration failed", 500)

    @app.post("/files/upload")
    async def upload(files: List[UploadFile] = File(...),
                     cfg: AppConfig = Depends(get_config),
                     repo: FilesRepository = Depends(get_repository)):
        """Ingest uploaded text files under a single ingest run."""
        uploads = [
            UploadedFile(filename=f.filename or "", content=await f.read(), content_type=f.content_type)
            for f in files
        ]
        try:
            return await file_handlers.upload_files(repo, uploads, cfg.watch.root_path)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Upload failed: {e}")
            return _failure("Upload failed", 500)

    @app.post("/files/watch/run")
    async def watch_run(req: Optional[WatchRunRequest] = Body(default=None),
                        cfg: AppConfig = Depends(get_config),
                        repo: FilesRepository = Depends(get_repository),
                        proc: IncrementalProcessor = Depends(get_processor),
                        watch: Watcher = Depends(get_watcher)):
        """Force a full scan cycle, or reprocess only the files tracked at ``path``."""
        path = ((req.path if req else None) or "").strip()

        try:
            await repo.ping()
        except PipelineError as e:
            logger.error(f"Watch run preflight failed: {e.message}")
            return _failure("Database unavailable", 503)

        options = WatcherOptions.from_config(cfg.watch)
        try:
            if path:
                watch.start(options)
                return await file_handlers.run_targeted(repo, proc, path, cfg.watch.root_path)
            return await file_handlers.run_full_cycle(watch, options)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Watch run failed: {e}")
            return _failure("Watch run failed", 500)

    @app.post("/files/reindex/{file_id}")
    async def reindex(file_id: str,
                      req: Optional[ReindexRequest] = Body(default=None),
                      repo: FilesRepository = Depends(get_repository),
                      proc: IncrementalProcessor = Depends(get_processor)):
        """Reprocess one file from override text or its stored text."""
        override_text = req.overrideText if req else None
        try:
            return await file_handlers.reindex_file(repo, proc, file_id, override_text)
        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Reindex of {file_id} failed: {e}")
            return _failure("Reindex failed", 500)

    @app.post("/admin/backfill")
    async def backfill(repo: FilesRepository = Depends(get_repository)):
        """Fill missing fingerprints from stored text."""
        updated = await file_handlers.backfill_fingerprints(repo)
        return {"success": True, "updated": updated}

    @app.get("/debug/files")
    async def debug_files(run_id: Optional[str] = Query(default=None),
                          repo: FilesRepository = Depends(get_repository)):
        """Tracked files and their chunks, optionally for one run."""
        return await file_handlers.list_debug_files(repo, run_id)

    @app.delete("/debug/files/{file_id}")
    async def debug_delete_file(file_id: str, repo: FilesRepository = Depends(get_repository)):
        if not await repo.delete_tracked_file(file_id):
            raise NotFoundError("Not found")
        return {"success": True, "deleted": file_id}

    @app.get("/debug/watch/runs")
    async def debug_watch_runs(limit: int = Query(default=20, ge=1, le=200),
                               repo: FilesRepository = Depends(get_repository)):
        runs = await file_handlers.list_watch_runs(repo, limit)
        return {"success": True, "runs": runs, "total": len(runs)}

    return app


app = create_app()
