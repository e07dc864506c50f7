"""
Flags service: feature flag evaluation, administration and audit queries.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import Depends, Query, Request

from shared.base_service import MAX_HEADER_LENGTH, BaseService
from shared.config import ServiceConfig
from shared.errors import AuthorizationError, ValidationError
from shared.logging import new_correlation_id, set_user_context

from .admin.service import FlagAdministration
from .evaluation.evaluator import Evaluator
from .persistence import build_backends
from .persistence.base import AuditLedger, FlagStore
from .rules.engine import AllowlistEvaluator
from .rules.models import (
    Actor, AllowlistAddRequest, AllowlistKind, AllowlistResponse, AuditEventResponse,
    AuditListResponse, BulkEvaluateRequest, EvaluateRequest, EvaluationContext,
    EvaluationResponse, FeatureFlag, FlagCreateRequest, FlagDetailResponse, FlagListResponse,
    FlagPatch, FlagResponse, FlagUpdateRequest
)

SERVICE_NAME = "flags"
SERVICE_PORT = 8013


class FlagsService(BaseService):
    """Flags service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 store: Optional[FlagStore] = None, ledger: Optional[AuditLedger] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        if store is None or ledger is None:
            store, ledger = build_backends(self.config)
        self.store = store
        self.ledger = ledger

        self.rule_engine = AllowlistEvaluator()
        self.evaluator = Evaluator(
            store,
            ledger,
            rule_engine=self.rule_engine,
            metrics=self.metrics,
            store_timeout=self.config.store_timeout_seconds,
            audit_timeout=self.config.audit_timeout_seconds
        )
        self.admin = FlagAdministration(store, ledger, self.metrics)

        self._setup_flags_routes()

    def _environment(self, requested: Optional[str]) -> str:
        return requested or self.config.environment

    @staticmethod
    def _correlation_id(request: Request) -> str:
        return getattr(request.state, "correlation_id", None) or new_correlation_id()

    def _setup_flags_routes(self):
        """Set up flag-specific routes."""

        async def require_admin(request: Request) -> Actor:
            """Admit callers carrying the admin role forwarded by the auth layer."""
            roles = {
                role.strip() for role in request.headers.get("x-user-roles", "").split(",")
                if role.strip()
            }
            user_id = request.headers.get("x-user-id")
            tenant_id = request.headers.get("x-tenant-id")
            for header, value in (("x-user-id", user_id), ("x-tenant-id", tenant_id)):
                if value and len(value) > MAX_HEADER_LENGTH:
                    raise ValidationError(
                        f"Header {header} is too long",
                        {"header": header, "max_length": MAX_HEADER_LENGTH}
                    )

            if self.config.admin_role not in roles:
                self.logger.warning("Administrative access denied", user_id=user_id, tenant_id=tenant_id)
                raise AuthorizationError(
                    "Administrative role required",
                    {"required_role": self.config.admin_role}
                )

            set_user_context(user_id=user_id, tenant_id=tenant_id)
            return Actor(user_id=user_id, tenant_id=tenant_id,
                         correlation_id=self._correlation_id(request))

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Flag Gate - Flags Service",
                "version": "1.0.0",
                "capabilities": ["evaluation", "administration", "audit"]
            }

        @self.app.post("/flags/evaluate", response_model=EvaluationResponse)
        async def evaluate_flag(request: Request, body: EvaluateRequest):
            """Evaluate one flag for the calling tenant/user."""
            context = EvaluationContext(
                correlation_id=self._correlation_id(request),
                environment=self._environment(body.environment),
                tenant_id=body.tenant_id,
                user_id=body.user_id
            )
            result = await self.evaluator.evaluate(body.flag_name, context)
            return EvaluationResponse.from_result(result)

        @self.app.post("/flags/evaluate-bulk", response_model=List[EvaluationResponse])
        async def evaluate_flags(request: Request, body: BulkEvaluateRequest):
            """Evaluate several flags; results follow the request order."""
            context = EvaluationContext(
                correlation_id=self._correlation_id(request),
                environment=self._environment(body.environment),
                tenant_id=body.tenant_id,
                user_id=body.user_id
            )
            results = await self.evaluator.evaluate_bulk(body.flag_names, context)
            return [EvaluationResponse.from_result(result) for result in results]

        @self.app.get("/flags", response_model=FlagListResponse)
        async def list_flags(
            environment: Optional[str] = Query(None, description="Filter by environment"),
            actor: Actor = Depends(require_admin)
        ):
            """List flags, optionally for one environment."""
            flags = await self.admin.list_flags(environment)
            return FlagListResponse(flags=[FlagResponse.from_flag(f) for f in flags], total=len(flags))

        @self.app.post("/flags", response_model=FlagResponse, status_code=201)
        async def create_flag(body: FlagCreateRequest, actor: Actor = Depends(require_admin)):
            """Create a new flag."""
            flag = FeatureFlag(
                name=body.name,
                environment=self._environment(body.environment),
                status=body.status,
                owner=body.owner or actor.user_id or "unassigned"
            )
            created = await self.admin.create_flag(flag, actor)
            return FlagResponse.from_flag(created)

        @self.app.get("/flags/{name}", response_model=FlagDetailResponse)
        async def get_flag(name: str, environment: Optional[str] = Query(None),
                           actor: Actor = Depends(require_admin)):
            """Get a flag with its allowlists."""
            flag, tenants, users = await self.admin.get_flag(name, self._environment(environment))
            return FlagDetailResponse(
                **FlagResponse.from_flag(flag).model_dump(),
                tenant_allowlist=sorted(tenants),
                user_allowlist=sorted(users)
            )

        @self.app.patch("/flags/{name}", response_model=FlagResponse)
        async def update_flag(name: str, body: FlagUpdateRequest,
                              environment: Optional[str] = Query(None),
                              actor: Actor = Depends(require_admin)):
            """Change a flag's status and/or owner."""
            updated = await self.admin.update_flag(
                name,
                self._environment(environment),
                FlagPatch(status=body.status, owner=body.owner),
                actor
            )
            return FlagResponse.from_flag(updated)

        @self.app.delete("/flags/{name}")
        async def delete_flag(name: str, environment: Optional[str] = Query(None),
                              actor: Actor = Depends(require_admin)):
            """Delete a flag. Its audit trail is kept."""
            deleted = await self.admin.delete_flag(name, self._environment(environment), actor)
            return {
                "success": True,
                "message": "Flag deleted successfully",
                "name": deleted.name,
                "environment": deleted.environment
            }

        @self.app.get("/flags/{name}/allowlist/{kind}", response_model=AllowlistResponse)
        async def get_allowlist(name: str, kind: AllowlistKind, environment: Optional[str] = Query(None),
                                actor: Actor = Depends(require_admin)):
            """List one allowlist of a flag."""
            env = self._environment(environment)
            subjects = await self.admin.list_allowlist(name, env, kind)
            return AllowlistResponse(flag_name=name, environment=env, kind=kind, subjects=sorted(subjects))

        @self.app.post("/flags/{name}/allowlist/{kind}", response_model=AllowlistResponse)
        async def add_to_allowlist(name: str, kind: AllowlistKind, body: AllowlistAddRequest,
                                   environment: Optional[str] = Query(None),
                                   actor: Actor = Depends(require_admin)):
            """Add a tenant or user to a flag's allowlist."""
            env = self._environment(environment)
            changed = await self.admin.add_to_allowlist(name, env, kind, body.subject_id, actor)
            subjects = await self.admin.list_allowlist(name, env, kind)
            return AllowlistResponse(flag_name=name, environment=env, kind=kind,
                                     subjects=sorted(subjects), changed=changed)

        @self.app.delete("/flags/{name}/allowlist/{kind}/{subject_id}", response_model=AllowlistResponse)
        async def remove_from_allowlist(name: str, kind: AllowlistKind, subject_id: str,
                                        environment: Optional[str] = Query(None),
                                        actor: Actor = Depends(require_admin)):
            """Remove a tenant or user from a flag's allowlist."""
            env = self._environment(environment)
            changed = await self.admin.remove_from_allowlist(name, env, kind, subject_id, actor)
            subjects = await self.admin.list_allowlist(name, env, kind)
            return AllowlistResponse(flag_name=name, environment=env, kind=kind,
                                     subjects=sorted(subjects), changed=changed)

        @self.app.get("/audit", response_model=AuditListResponse)
        async def query_audit(
            correlation_id: Optional[str] = Query(None, alias="correlationId"),
            flag_name: Optional[str] = Query(None, alias="flagName"),
            environment: Optional[str] = Query(None),
            start: Optional[datetime] = Query(None, alias="from"),
            end: Optional[datetime] = Query(None, alias="to"),
            limit: Optional[int] = Query(None, ge=1, le=500, description="Events per page"),
            cursor: Optional[int] = Query(None, ge=0, description="Id of the last event already seen"),
            actor: Actor = Depends(require_admin)
        ):
            """Retrieve audit events by correlation ID or by flag and time range."""
            page_size = limit or self.config.audit_page_limit
            if correlation_id:
                page = await self.admin.audit_by_correlation_id(correlation_id, limit=page_size, cursor=cursor)
            elif flag_name:
                page = await self.admin.audit_by_flag(
                    flag_name, self._environment(environment),
                    start=start, end=end, limit=page_size, cursor=cursor
                )
            else:
                raise ValidationError("Either correlationId or flagName is required")

            return AuditListResponse(
                events=[AuditEventResponse.from_event(e) for e in page.events],
                next_cursor=page.next_cursor
            )

    async def _check_dependencies(self):
        """Check flag store and audit ledger."""
        return {
            "flag_store": "ok" if await self.store.health_check() else "error",
            "audit_ledger": "ok" if await self.ledger.health_check() else "error",
        }

    async def start(self):
        """Start flag service components."""
        await self.store.start()
        await self.ledger.start()
        self.logger.info("Flags service started", backend=type(self.store).__name__,
                         environment=self.config.environment)

    async def stop(self):
        """Stop flag service components."""
        await self.evaluator.drain()
        await self.ledger.stop()
        await self.store.stop()
        self.logger.info("Flags service stopped")


def create_app(config: Optional[ServiceConfig] = None,
               store: Optional[FlagStore] = None, ledger: Optional[AuditLedger] = None):
    """Create flags service application."""
    service = FlagsService(config=config, store=store, ledger=ledger)
    return service.app


if __name__ == "__main__":
    FlagsService().run()
