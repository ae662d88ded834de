"""FastAPI application exposing sync triggers, mutations and cached reads."""

import logging
from datetime import datetime
from typing import Any, List, Optional

from dateutil import parser as date_parser
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import Settings, load_settings
from .database import CacheStore
from .errors import NotConnectedError, ResourceNotFoundError, SyncError, TenantInactiveError
from .locking import TenantLockManager
from .models import (
    ContactCreate, ContactUpdate, EventCreate, EventUpdate, GrantRegistration, Participant, ensure_utc
)
from .mutations import MutationService
from .queries import CacheQueries
from .services import NylasProviderClient, ProviderError, ProviderNotFoundError
from .sync_engine import SyncEngine
from .tenants import TenantResolver

logger = logging.getLogger(__name__)


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SyncWindowRequest(ApiModel):
    start_date: Optional[datetime] = Field(None, alias='startDate')
    end_date: Optional[datetime] = Field(None, alias='endDate')


class EventCreateRequest(ApiModel):
    calendar_id: str = Field(..., alias='calendarId')
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime = Field(..., alias='startTime')
    end_time: datetime = Field(..., alias='endTime')
    participants: Optional[List[Participant]] = None


class EventUpdateRequest(ApiModel):
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = Field(None, alias='startTime')
    end_time: Optional[datetime] = Field(None, alias='endTime')
    participants: Optional[List[Participant]] = None


class FolderCreateRequest(ApiModel):
    name: str = Field(..., min_length=1)
    parent_id: Optional[str] = Field(None, alias='parentId')


class FolderUpdateRequest(ApiModel):
    name: str = Field(..., min_length=1)


class FindOrCreateFolderRequest(ApiModel):
    name: str = Field(..., min_length=1)
    create_if_missing: bool = Field(True, alias='createIfMissing')


class MoveEmailRequest(ApiModel):
    email_id: Optional[str] = Field(None, alias='emailId')
    folder_name: Optional[str] = Field(None, alias='folderName')
    create_if_missing: bool = Field(True, alias='createIfMissing')


class ContactRequest(ApiModel):
    given_name: Optional[str] = Field(None, alias='givenName')
    surname: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = Field(None, alias='phoneNumber')
    company_name: Optional[str] = Field(None, alias='companyName')
    job_title: Optional[str] = Field(None, alias='jobTitle')


class GrantRequest(ApiModel):
    grant_id: str = Field(..., alias='grantId', min_length=1)
    email: Optional[str] = None
    provider: str = "nylas"
    is_primary: bool = Field(True, alias='isPrimary')


def ok(data: Any = None) -> dict:
    return {"success": True, "data": jsonable_encoder(data)}


def fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    """Parse an ISO date or datetime query parameter into aware UTC."""
    if not value:
        return None
    try:
        return ensure_utc(date_parser.isoparse(value))
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Invalid {name}: {value}") from e


def create_app(settings: Optional[Settings] = None, engine: Optional[SyncEngine] = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Application settings (loaded from the environment when omitted)
        engine: Pre-built sync engine; when omitted startup builds the cache
            store, provider client and lock manager and shutdown disposes them
    """
    app = FastAPI(title="TenantSync Server", version="1.0")

    @app.on_event("startup")
    async def on_startup():
        sync_engine = engine
        if sync_engine is None:
            app_settings = settings or load_settings()
            app_settings.ensure_directories()
            store = CacheStore(app_settings)
            sync_engine = SyncEngine(
                store, NylasProviderClient(app_settings), app_settings, TenantLockManager()
            )
            await sync_engine.initialize()
            app.state.owns_engine = True
        else:
            app.state.owns_engine = False

        app.state.engine = sync_engine
        app.state.mutations = MutationService(
            sync_engine.store, sync_engine.provider, sync_engine.settings, sync_engine.locks
        )
        app.state.queries = CacheQueries(sync_engine.store)
        app.state.tenants = TenantResolver(sync_engine.store)

    @app.on_event("shutdown")
    async def on_shutdown():
        if getattr(app.state, 'owns_engine', False):
            await app.state.engine.cleanup()
            app.state.engine.store.close()

    # -- error envelopes ---------------------------------------------------

    @app.exception_handler(ResourceNotFoundError)
    async def not_found_handler(request: Request, exc: ResourceNotFoundError):
        return fail(404, str(exc))

    @app.exception_handler(TenantInactiveError)
    async def inactive_handler(request: Request, exc: TenantInactiveError):
        return fail(403, str(exc))

    @app.exception_handler(NotConnectedError)
    async def not_connected_handler(request: Request, exc: NotConnectedError):
        return fail(400, str(exc))

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError):
        return fail(400, str(exc))

    @app.exception_handler(ProviderError)
    async def provider_handler(request: Request, exc: ProviderError):
        logger.error(f"Provider error on {request.method} {request.url.path}: {exc}")
        status_code = 404 if isinstance(exc, ProviderNotFoundError) else 502
        return fail(status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return fail(400, _validation_message(exc.errors()))

    @app.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError):
        return fail(400, _validation_message(exc.errors()))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return fail(400, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return fail(500, str(exc) or type(exc).__name__)

    # -- health & tenants --------------------------------------------------

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.post("/tenants/{tenant}/grants")
    async def register_grant(tenant: str, body: GrantRequest):
        registration = GrantRegistration(**body.model_dump())
        with app.state.engine.store.get_session() as session:
            grant = app.state.tenants.register_grant(session, tenant, registration)
            return ok({
                "tenant_id": grant.tenant_id,
                "grant_id": grant.grant_id,
                "email": grant.email,
                "provider": grant.provider,
                "is_primary": grant.is_primary,
            })

    @app.delete("/tenants/{tenant}/grants/{grant_id}")
    async def deactivate_grant(tenant: str, grant_id: str):
        with app.state.engine.store.get_session() as session:
            if not app.state.tenants.deactivate_grant(session, tenant, grant_id):
                return fail(404, f"Grant not found: {grant_id}")
        return ok({"deactivated": True})

    @app.get("/tenants/{tenant}/status")
    async def sync_status(tenant: str):
        return ok(app.state.queries.get_sync_status(tenant))

    # -- calendar sync -----------------------------------------------------

    @app.post("/calendar/{tenant}/sync")
    async def sync_calendars(tenant: str, account: Optional[str] = None):
        return ok(await app.state.engine.sync_calendars(tenant, account=account))

    @app.post("/calendar/{tenant}/initial-sync")
    async def initial_calendar_sync(tenant: str, account: Optional[str] = None):
        result = await app.state.engine.initial_calendar_sync(tenant, account=account)
        return ok({
            "calendars": result.calendars,
            "events": result.events,
            "totalEvents": result.total_events,
        })

    @app.post("/calendar/{tenant}/{calendar}/sync-events")
    async def sync_calendar_events(
        tenant: str,
        calendar: str,
        body: Optional[SyncWindowRequest] = None,
        account: Optional[str] = None
    ):
        window = body or SyncWindowRequest()
        result = await app.state.engine.sync_calendar_events(
            tenant, calendar,
            start_date=window.start_date,
            end_date=window.end_date,
            account=account
        )
        return ok(result)

    # -- calendar reads ----------------------------------------------------

    @app.get("/calendar/{tenant}")
    async def list_calendars(tenant: str):
        return ok(app.state.queries.get_cached_calendars(tenant))

    @app.get("/calendar/{tenant}/upcoming")
    async def upcoming_events(
        tenant: str,
        days: Optional[int] = Query(None, ge=1),
        limit: Optional[int] = Query(None, ge=1)
    ):
        return ok(app.state.queries.get_upcoming_events(tenant, days=days, limit=limit))

    @app.get("/calendar/{tenant}/events")
    async def list_events(
        tenant: str,
        calendar_id: Optional[str] = Query(None, alias='calendarId'),
        start_date: Optional[str] = Query(None, alias='startDate'),
        end_date: Optional[str] = Query(None, alias='endDate'),
        limit: Optional[int] = Query(None, ge=1)
    ):
        events = app.state.queries.get_cached_events(
            tenant,
            calendar_id=calendar_id,
            start_date=parse_date(start_date, 'startDate'),
            end_date=parse_date(end_date, 'endDate'),
            limit=limit
        )
        return ok(events)

    @app.get("/calendar/{tenant}/event/{event}")
    async def get_event(tenant: str, event: str):
        cached = app.state.queries.get_event(tenant, event)
        if cached is None:
            return fail(404, f"Event not found: {event}")
        return ok(cached)

    @app.get("/calendar/{tenant}/{calendar}/events")
    async def list_calendar_events(
        tenant: str,
        calendar: str,
        start_date: Optional[str] = Query(None, alias='startDate'),
        end_date: Optional[str] = Query(None, alias='endDate'),
        limit: Optional[int] = Query(None, ge=1)
    ):
        events = app.state.queries.get_cached_events(
            tenant,
            calendar_id=calendar,
            start_date=parse_date(start_date, 'startDate'),
            end_date=parse_date(end_date, 'endDate'),
            limit=limit
        )
        return ok(events)

    # -- event mutations ---------------------------------------------------

    @app.post("/calendar/{tenant}/events/create")
    async def create_event(tenant: str, body: EventCreateRequest, account: Optional[str] = None):
        params = EventCreate(**body.model_dump())
        return ok(await app.state.mutations.create_and_sync_event(tenant, params, account=account))

    @app.put("/calendar/{tenant}/event/{event}")
    async def update_event(tenant: str, event: str, body: EventUpdateRequest, account: Optional[str] = None):
        params = EventUpdate(**body.model_dump(exclude_unset=True))
        return ok(await app.state.mutations.update_and_sync_event(tenant, event, params, account=account))

    @app.delete("/calendar/{tenant}/event/{event}")
    async def delete_event(tenant: str, event: str, account: Optional[str] = None):
        await app.state.mutations.delete_and_sync_event(tenant, event, account=account)
        return ok({"deleted": True})

    # -- folders -----------------------------------------------------------

    @app.post("/folders/{tenant}/sync")
    async def sync_folders(tenant: str, account: Optional[str] = None):
        return ok(await app.state.engine.sync_folders(tenant, account=account))

    @app.post("/folders/{tenant}/initial-sync")
    async def initial_folder_sync(tenant: str, account: Optional[str] = None):
        return ok(await app.state.engine.initial_folder_sync(tenant, account=account))

    @app.get("/folders/{tenant}")
    async def list_folders(tenant: str):
        return ok(app.state.queries.get_cached_folders(tenant))

    @app.post("/folders/{tenant}/create")
    async def create_folder(tenant: str, body: FolderCreateRequest, account: Optional[str] = None):
        folder = await app.state.mutations.create_and_sync_folder(
            tenant, body.name, parent_id=body.parent_id, account=account
        )
        return ok(folder)

    @app.post("/folders/{tenant}/find-or-create")
    async def find_or_create_folder(tenant: str, body: FindOrCreateFolderRequest, account: Optional[str] = None):
        folder = await app.state.mutations.find_or_create_folder(
            tenant, body.name, create_if_missing=body.create_if_missing, account=account
        )
        if folder is None:
            return fail(404, f"Folder not found: {body.name}")
        return ok(folder)

    @app.post("/folders/{tenant}/move-email")
    async def move_email(tenant: str, body: MoveEmailRequest, account: Optional[str] = None):
        result = await app.state.mutations.move_email_to_folder(
            tenant, body.email_id, body.folder_name,
            create_if_missing=body.create_if_missing, account=account
        )
        return ok(result)

    @app.put("/folders/{tenant}/{folder}")
    async def rename_folder(tenant: str, folder: str, body: FolderUpdateRequest, account: Optional[str] = None):
        return ok(await app.state.mutations.update_and_sync_folder(tenant, folder, body.name, account=account))

    @app.delete("/folders/{tenant}/{folder}")
    async def delete_folder(tenant: str, folder: str, account: Optional[str] = None):
        await app.state.mutations.delete_and_sync_folder(tenant, folder, account=account)
        return ok({"deleted": True})

    # -- contacts ----------------------------------------------------------

    @app.post("/contacts/{tenant}/sync")
    async def sync_contacts(tenant: str, account: Optional[str] = None):
        return ok(await app.state.engine.sync_contacts(tenant, account=account))

    @app.post("/contacts/{tenant}/initial-sync")
    async def initial_contact_sync(tenant: str, account: Optional[str] = None):
        return ok(await app.state.engine.initial_contact_sync(tenant, account=account))

    @app.get("/contacts/{tenant}")
    async def list_contacts(
        tenant: str,
        search: Optional[str] = None,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0)
    ):
        return ok(app.state.queries.get_cached_contacts(tenant, search=search, limit=limit, offset=offset))

    @app.get("/contacts/{tenant}/search")
    async def search_contacts(tenant: str, q: Optional[str] = None, limit: Optional[int] = Query(None, ge=1)):
        if not (q or '').strip():
            return fail(400, "Search query (q) is required")
        return ok({"contacts": app.state.queries.search_contacts(tenant, q, limit=limit)})

    @app.post("/contacts/{tenant}/create")
    async def create_contact(tenant: str, body: ContactRequest, account: Optional[str] = None):
        params = ContactCreate(**body.model_dump())
        return ok(await app.state.mutations.create_and_sync_contact(tenant, params, account=account))

    @app.get("/contacts/{tenant}/{contact}")
    async def get_contact(tenant: str, contact: str):
        cached = app.state.queries.get_contact(tenant, contact)
        if cached is None:
            return fail(404, f"Contact not found: {contact}")
        return ok(cached)

    @app.put("/contacts/{tenant}/{contact}")
    async def update_contact(tenant: str, contact: str, body: ContactRequest, account: Optional[str] = None):
        params = ContactUpdate(**body.model_dump(exclude_unset=True))
        return ok(await app.state.mutations.update_and_sync_contact(tenant, contact, params, account=account))

    @app.delete("/contacts/{tenant}/{contact}")
    async def delete_contact(tenant: str, contact: str, account: Optional[str] = None):
        await app.state.mutations.delete_and_sync_contact(tenant, contact, account=account)
        return ok({"deleted": True})

    return app


def _validation_message(errors) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get('loc', ()) if part != 'body')
        message = error.get('msg', 'invalid value')
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


app = create_app()
