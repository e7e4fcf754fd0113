import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, status
from pydantic import BaseModel

from mailhub.config import ServerConfig, load_config
from mailhub.engine.database import Database
from mailhub.engine.imap_provider import ImapProvider
from mailhub.engine.links import LinkRegistry
from mailhub.engine.message_store import MessageStore
from mailhub.engine.pagination import CursorPaginator
from mailhub.engine.sync import MailProvider, MailSyncEngine
from mailhub.engine.thread_assembler import ThreadAssembler
from mailhub.exceptions import (
    ConflictError,
    InvalidEntityType,
    MailHubError,
    NotFoundError,
    RefreshThrottled,
    StorageError,
    SyncInProgress,
    SyncProviderError,
)
from mailhub.models import Cursor, EntityLink, EntityType, LinkTarget, ListFilter

logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)


class EngineState:
    def __init__(self):
        self.config: Optional[ServerConfig] = None
        self.database: Optional[Database] = None
        self.store: Optional[MessageStore] = None
        self.assembler: Optional[ThreadAssembler] = None
        self.paginator: Optional[CursorPaginator] = None
        self.links: Optional[LinkRegistry] = None
        self.provider: Optional[MailProvider] = None
        self.sync_engine: Optional[MailSyncEngine] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.running = False

    def setup(
        self, config: ServerConfig, provider: Optional[MailProvider] = None
    ) -> None:
        """Build the engine components for a configuration.

        Without an explicit provider, an IMAP provider is created when IMAP
        is configured; otherwise refreshes report the provider unavailable.
        """
        self.config = config
        self.database = Database(config.database.path)
        self.store = MessageStore(self.database)
        self.assembler = ThreadAssembler(
            self.database, self.store, lookback_days=config.sync.lookback_days
        )
        self.paginator = CursorPaginator(
            self.database,
            default_page_size=config.api.default_page_size,
            max_page_size=config.api.max_page_size,
        )
        self.links = LinkRegistry(self.database)

        account_address = None
        sent_folders: list[str] = []
        if config.imap:
            if provider is None:
                provider = ImapProvider(config.imap)
            if "@" in config.imap.username:
                account_address = config.imap.username
            sent_folders = config.imap.sent_folders
        self.provider = provider

        self.sync_engine = MailSyncEngine(
            self.database,
            self.store,
            self.assembler,
            provider,
            config=config.sync,
            account_address=account_address,
            sent_folders=sent_folders,
        )


state = EngineState()


# Request models
class LinkRequest(BaseModel):
    type: str
    entityId: str


class ThreadPatchRequest(BaseModel):
    starred: Optional[bool] = None
    archived: Optional[bool] = None
    read: Optional[bool] = None


def _error_response(e: MailHubError) -> HTTPException:
    """Map the error taxonomy onto HTTP status codes."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidEntityType):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": str(e),
                "allowed": [t.value for t in EntityType],
            },
        )
    if isinstance(e, ConflictError):
        detail: dict[str, Any] = {"error": str(e)}
        if isinstance(e.existing, EntityLink):
            detail["existing"] = e.existing.to_dict()
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(e, SyncInProgress):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Sync in progress, try again shortly", "retryAfter": e.retry_after},
            headers={"Retry-After": str(e.retry_after)},
        )
    if isinstance(e, RefreshThrottled):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": str(e), "retryAfter": e.retry_after},
            headers={"Retry-After": str(e.retry_after)},
        )
    if isinstance(e, SyncProviderError):
        code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if e.unavailable
            else status.HTTP_502_BAD_GATEWAY
        )
        return HTTPException(status_code=code, detail=f"Mail provider error: {e}")
    if isinstance(e, StorageError):
        logger.error(f"Storage error: {e}")
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Storage error",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
    )


def _require_ready() -> None:
    if not state.database:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine not ready",
        )


async def sync_loop():
    """Periodic background refresh."""
    assert state.config is not None
    interval = state.config.sync.interval_seconds
    logger.info(f"Sync loop started, refreshing every {interval}s")

    while state.running:
        if state.sync_engine:
            try:
                await state.sync_engine.refresh_with_retry(force=True)
            except StorageError as e:
                logger.error(f"[SYNC] Storage failure in background sync: {e}")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting mailhub engine...")

    if state.database is None:
        state.setup(load_config())

    state.running = True
    if state.provider and state.config and state.config.sync.interval_seconds > 0:
        state.sync_task = asyncio.create_task(sync_loop())
    else:
        logger.info("No mail provider configured - background sync disabled")

    yield

    logger.info("Shutting down mailhub engine...")
    state.running = False

    if state.sync_task:
        state.sync_task.cancel()
        try:
            await state.sync_task
        except asyncio.CancelledError:
            pass

    if isinstance(state.provider, ImapProvider):
        state.provider.disconnect()


app = FastAPI(title="Mailhub Engine", lifespan=lifespan)


# ============================================================================
# Status endpoints
# ============================================================================


@app.get("/health")
async def health():
    return {
        "service": "mailhub-engine",
        "health": "healthy" if state.database else "starting",
    }


@app.get("/api/sync/status")
async def sync_status():
    _require_ready()
    assert state.sync_engine and state.store and state.assembler
    try:
        sync_state = state.sync_engine.get_state()
        return {
            **sync_state.to_dict(),
            "providerConfigured": state.provider is not None,
            "messageCount": state.store.count(),
            "threadCount": state.assembler.thread_count(),
            "recentErrors": state.sync_engine.recent_errors(),
        }
    except MailHubError as e:
        raise _error_response(e)


# ============================================================================
# Mail endpoints
# ============================================================================


def _cursor_params(cursor: Optional[Cursor]) -> Optional[dict[str, str]]:
    return cursor.to_params() if cursor else None


@app.get("/mail/list")
async def list_mail(
    folder: str = "inbox",
    limit: Optional[int] = None,
    before: Optional[str] = None,
    before_id: Optional[str] = Query(None, alias="beforeId"),
    search: Optional[str] = None,
    link_type: Optional[str] = Query(None, alias="linkType"),
    unlinked: bool = False,
    unread: bool = False,
    view: str = "threads",
):
    _require_ready()
    assert state.paginator and state.links

    try:
        cursor = Cursor.from_params(before, before_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if view not in ("threads", "messages"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="view must be 'threads' or 'messages'",
        )

    try:
        filters = ListFilter(
            search=search,
            link_type=EntityType.parse(link_type) if link_type else None,
            unlinked=unlinked,
            unread_only=unread,
        )
        if view == "threads":
            page = state.paginator.page(folder, filters, cursor, limit)
            links = state.links.links_for_threads([t.id for t in page.items])
            emails = [
                {**t.to_dict(), "links": [l.to_dict() for l in links.get(t.id, [])]}
                for t in page.items
            ]
        else:
            page = state.paginator.page_messages(folder, filters, cursor, limit)
            message_links = state.links.links_for_messages([m.id for m in page.items])
            thread_links = state.links.links_for_threads(
                list({m.thread_key for m in page.items if m.thread_key})
            )
            emails = []
            for m in page.items:
                scoped = message_links.get(m.id, []) + [
                    l for l in thread_links.get(m.thread_key, []) if l.thread_id
                ]
                emails.append(
                    {
                        **m.to_dict(include_body=False),
                        "links": [l.to_dict() for l in scoped],
                    }
                )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MailHubError as e:
        raise _error_response(e)

    return {
        "emails": emails,
        "hasMore": page.has_more,
        "nextCursor": _cursor_params(page.next_cursor),
    }


@app.get("/mail/links")
async def list_entity_links(
    entity_type: str = Query(..., alias="type"),
    entity_id: str = Query(..., alias="entityId"),
):
    _require_ready()
    assert state.links
    try:
        links = state.links.links_for_entity(entity_type, entity_id)
    except MailHubError as e:
        raise _error_response(e)
    return {"links": [l.to_dict() for l in links]}


@app.delete("/mail/links/{link_id}")
async def delete_link(link_id: str):
    _require_ready()
    assert state.links
    try:
        removed = state.links.unlink(link_id)
    except MailHubError as e:
        raise _error_response(e)
    return {"status": "ok", "removed": removed}


@app.post("/mail/refresh")
async def refresh_mail(force: bool = False):
    _require_ready()
    assert state.sync_engine
    loop = asyncio.get_running_loop()
    try:
        summary = await loop.run_in_executor(None, state.sync_engine.refresh, force)
    except MailHubError as e:
        if isinstance(e, SyncProviderError):
            logger.error(f"Refresh failed: {e}")
        raise _error_response(e)
    return {"status": "ok", **summary.to_dict()}


@app.get("/mail/messages/{message_id}")
async def get_message(message_id: str):
    _require_ready()
    assert state.store and state.links
    try:
        message = state.store.get(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        links = state.links.links_for_message(message_id)
    except MailHubError as e:
        raise _error_response(e)
    return {**message.to_dict(), "links": [l.to_dict() for l in links]}


@app.post("/mail/messages/{message_id}/link", status_code=status.HTTP_201_CREATED)
async def link_message(message_id: str, req: LinkRequest):
    return _create_link(LinkTarget.MESSAGE, message_id, req)


@app.post("/mail/threads/{thread_id}/link", status_code=status.HTTP_201_CREATED)
async def link_thread(thread_id: str, req: LinkRequest):
    return _create_link(LinkTarget.THREAD, thread_id, req)


def _create_link(target: LinkTarget, target_id: str, req: LinkRequest) -> dict[str, Any]:
    _require_ready()
    assert state.links
    try:
        link = state.links.link(target, target_id, req.type, req.entityId)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )
    except MailHubError as e:
        raise _error_response(e)
    return link.to_dict()


@app.patch("/mail/threads/{thread_id}")
async def update_thread(thread_id: str, req: ThreadPatchRequest):
    _require_ready()
    assert state.assembler
    try:
        thread = state.assembler.update_flags(
            thread_id, read=req.read, starred=req.starred, archived=req.archived
        )
    except MailHubError as e:
        raise _error_response(e)
    return thread.to_dict()


@app.get("/mail/{thread_id}")
async def get_thread(thread_id: str):
    _require_ready()
    assert state.assembler and state.links
    try:
        thread = state.assembler.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread {thread_id} not found")
        messages = state.assembler.ordered_messages(thread_id)
        links = state.links.links_for_thread(thread_id)
    except MailHubError as e:
        raise _error_response(e)
    return {
        **thread.to_dict(),
        "messages": [m.to_dict() for m in messages],
        "links": [l.to_dict() for l in links],
    }


def run_engine():
    import argparse

    parser = argparse.ArgumentParser(description="Mailhub Engine API")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--host", type=str, default=None, help="TCP host to bind to")
    parser.add_argument("--port", type=int, default=None, help="TCP port to bind to")
    args = parser.parse_args()

    config = load_config(args.config)
    state.setup(config)

    host = args.host or config.api.host
    port = args.port or config.api.port
    logger.info(f"Starting Engine API on TCP {host}:{port}")

    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    server.run()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_engine()
