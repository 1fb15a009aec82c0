#!/usr/bin/env python3
"""
FastAPI Server for the Echo Tracker
===================================
HTTP surface for the browser extension and the dashboard.

Endpoints:
- POST   /api/log                     ingest one visit event
- GET    /api/pages                   list (sortBy/sortOrder) or search (q)
- GET    /api/pages/{id}/stats        per-page summary and daily series
- GET    /api/stats                   dashboard rollups for a range
- GET    /api/activity/recent|today|week
- GET    /api/projects, POST /api/projects
- GET    /api/projects/{id}, PATCH, DELETE

Every /api route requires ``Authorization: Bearer <token>``. Tracker errors
become 400/404 responses; anything unexpected becomes a 500.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from echo_tracker.config import TrackerConfig
from echo_tracker.database import Database
from echo_tracker.dashboard.engines.stats_engine import StatsEngine
from echo_tracker.errors import TrackerError, ValidationError
from echo_tracker.services.activity_service import ActivityService
from echo_tracker.services.page_service import PageService
from echo_tracker.services.project_service import ProjectService
from echo_tracker.services.user_service import UserService
from echo_tracker.utils.api_response_utils import error_response, tracker_error_response
from echo_tracker.utils.datetime_utils import (
    Clock,
    format_duration,
    format_iso,
    range_window,
    resolve_window,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per app."""

    config: TrackerConfig
    db: Database
    users: UserService
    pages: PageService
    projects: ProjectService
    activity: ActivityService
    stats: StatsEngine
    clock: Clock

    @classmethod
    def build(cls, config: TrackerConfig, db: Optional[Database] = None, clock: Clock = utcnow) -> "Services":
        db = db or Database(config.db_path).initialize()
        return cls(
            config=config,
            db=db,
            users=UserService(db, clock),
            pages=PageService(db, config, clock),
            projects=ProjectService(db, clock),
            activity=ActivityService(db, config, clock),
            stats=StatsEngine(db, config, clock),
            clock=clock,
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_user(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> str:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    user_id = await services.users.authenticate(token)
    if user_id is None:
        raise StarletteHTTPException(status_code=401, detail="Unauthorized")
    return user_id


def _formatted(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {**item, "totalDurationFormatted": format_duration(item["totalDuration"])}
        for item in items
    ]


def create_app(
    config: Optional[TrackerConfig] = None,
    db: Optional[Database] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    config = config or TrackerConfig()
    app = FastAPI(title="Echo Tracker API", version="0.1.0")
    app.state.services = Services.build(config, db, clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s -> %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "endpoint": request.url.path,
                "statusCode": response.status_code,
                "duration": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return response

    @app.exception_handler(TrackerError)
    async def handle_tracker_error(request: Request, exc: TrackerError):
        if not isinstance(exc, ValidationError):
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return tracker_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        return error_response("Invalid request", 400, details)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return error_response(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("%s %s crashed", request.method, request.url.path)
        return error_response("Internal server error", 500)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "echo-tracker-api"}

    # ---------------------------- Ingestion ----------------------------
    @app.post("/api/log", status_code=201)
    async def create_log(
        payload: Dict[str, Any] = Body(...),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        result = await services.activity.ingest(user_id, payload)
        return {"success": True, **result}

    # ---------------------------- Pages ----------------------------
    @app.get("/api/pages")
    async def list_pages(
        page: int = Query(1),
        limit: int = Query(20),
        sort_by: str = Query("lastSeenAt", alias="sortBy"),
        sort_order: str = Query("desc", alias="sortOrder"),
        q: Optional[str] = Query(None),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        if q:
            result = await services.pages.search_pages(user_id, q, page, limit)
        else:
            result = await services.pages.list_pages(user_id, page, limit, sort_by, sort_order)
        pagination = {key: result.pop(key) for key in ("page", "limit", "total", "totalPages")}
        logger.info(
            "Pages fetched: user=%s page=%s total=%s",
            user_id,
            pagination["page"],
            pagination["total"],
            extra={"userId": user_id, "meta": {"query": q, "sortBy": sort_by, **pagination}},
        )
        return {**result, "pagination": pagination}

    @app.get("/api/pages/{page_id}/stats")
    async def page_stats(
        page_id: str,
        start_date: Optional[str] = Query(None, alias="startDate"),
        end_date: Optional[str] = Query(None, alias="endDate"),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        return await services.stats.get_page_stats(user_id, page_id, start_date, end_date)

    # ---------------------------- Stats ----------------------------
    @app.get("/api/stats")
    async def stats(
        range_name: Optional[str] = Query("week", alias="range"),
        start_date: Optional[str] = Query(None, alias="startDate"),
        end_date: Optional[str] = Query(None, alias="endDate"),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        now = services.clock()
        if start_date or end_date:
            range_name = "custom"
            start, end = resolve_window(
                start_date, end_date, services.config.default_window_days, now=now
            )
        else:
            range_name, start, end = range_window(range_name, now)

        result = await services.stats.get_stats(user_id, start, end)
        recent = await services.activity.get_recent_activity(user_id)
        logger.info(
            "Stats fetched: user=%s range=%s",
            user_id,
            range_name,
            extra={
                "userId": user_id,
                "meta": {"range": range_name, "totalDuration": result["totalDuration"]},
            },
        )

        return {
            "range": range_name,
            "startDate": format_iso(start),
            "endDate": format_iso(end),
            "summary": {
                "totalDuration": result["totalDuration"],
                "totalDurationFormatted": format_duration(result["totalDuration"]),
            },
            "byProject": _formatted(result["byProject"]),
            "byDomain": _formatted(result["byDomain"]),
            "heatmap": result["heatmap"],
            "topPages": _formatted(result["topPages"]),
            "recentActivity": [
                {**item, "durationFormatted": format_duration(item["duration"])}
                for item in recent
            ],
        }

    # ---------------------------- Activity ----------------------------
    @app.get("/api/activity/recent")
    async def recent_activity(
        limit: Optional[int] = Query(None, ge=1, le=100),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        return {"results": await services.activity.get_recent_activity(user_id, limit)}

    @app.get("/api/activity/today")
    async def todays_activity(
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        return {"results": await services.stats.todays_activity(user_id)}

    @app.get("/api/activity/week")
    async def weeks_activity(
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        return {"results": await services.stats.this_weeks_activity(user_id)}

    # ---------------------------- Projects ----------------------------
    @app.get("/api/projects")
    async def list_projects(
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        projects = await services.projects.list_projects(user_id)
        return {"projects": [project.to_dict() for project in projects]}

    @app.post("/api/projects", status_code=201)
    async def create_project(
        body: Dict[str, Any] = Body(...),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        project = await services.projects.create_project(
            user_id, body.get("name"), body.get("color"), body.get("rules") or []
        )
        return {"project": project.to_dict()}

    @app.get("/api/projects/{project_id}")
    async def get_project(
        project_id: str,
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        project = await services.projects.get_project(user_id, project_id)
        return {"project": project.to_dict()}

    @app.patch("/api/projects/{project_id}")
    async def update_project(
        project_id: str,
        body: Dict[str, Any] = Body(...),
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        projects = services.projects
        project = None
        # At most one rule operation per request: add, remove by index, or replace
        if body.get("addRule") is not None:
            project = await projects.add_rule(user_id, project_id, body["addRule"])
        elif body.get("removeRuleIndex") is not None:
            project = await projects.remove_rule(user_id, project_id, body["removeRuleIndex"])
        elif body.get("rules") is not None:
            if not isinstance(body["rules"], list):
                raise ValidationError("rules must be a list")
            project = await projects.replace_rules(user_id, project_id, body["rules"])

        if body.get("name") is not None or body.get("color") is not None:
            project = await projects.update_project(
                user_id, project_id, name=body.get("name"), color=body.get("color")
            )
        if project is None:
            raise ValidationError("No valid updates provided")
        return {"success": True, "project": project.to_dict()}

    @app.delete("/api/projects/{project_id}")
    async def delete_project(
        project_id: str,
        user_id: str = Depends(current_user),
        services: Services = Depends(get_services),
    ):
        await services.projects.delete_project(user_id, project_id)
        return {"success": True, "message": "Project deleted"}

    return app
