"""
Admission gateway service for the Campfire Ads Platform.
"""

import uuid
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, Query, Request
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreaker
from shared.config import ServiceConfig
from shared.errors import NotFoundError

from .adapters import OwnerRegistry
from .auth import AccessController, IdentityResolver
from .domain import AdmissionPipeline, Principal, Role
from .domain.pipeline import HOOKS_STATE_ATTR
from .ratelimit import (
    CounterStore,
    EndpointRateLimiter,
    RateLimiter,
    RedisCounterStore,
    RTBRateLimiter,
    rate_limit_presets,
)


class TokenRequest(BaseModel):
    id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    role: Role
    expires_in: Optional[int] = Field(default=None, gt=0)


class PodcastCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""


class PodcastUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


class AudioUpload(BaseModel):
    filename: str = Field(min_length=1)
    content_type: str = Field(pattern=r"^audio/[\w.+-]+$")
    size_bytes: int = Field(gt=0)


class CampaignCreate(BaseModel):
    name: str = Field(min_length=1)
    budget: float = Field(gt=0)
    podcast_ids: List[str] = Field(default_factory=list)


class BidRequest(BaseModel):
    id: str = Field(min_length=1)
    impressions: List[Dict[str, Any]] = Field(default_factory=list)


class GatewayService(BaseService):
    """Admission gateway: every route runs through an admission pipeline."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[CounterStore] = None,
        podcasts: Optional[OwnerRegistry] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        super().__init__("gateway", 8000, config=config)
        self.presets = rate_limit_presets(self.config)

        self.store = store if store is not None else RedisCounterStore(
            self.config.redis_url,
            socket_timeout=self.config.redis_socket_timeout,
            breaker=CircuitBreaker(
                "redis_counter_store",
                failure_threshold=self.config.store_failure_threshold,
                recovery_timeout=self.config.store_recovery_timeout,
                tracked_exceptions=(RedisError, OSError),
            ),
        )
        self.identity = IdentityResolver.from_config(self.config)
        self.access = AccessController()
        self.rate_limiter = RateLimiter(
            self.store,
            default_config=self.presets["general"],
            metrics=self.metrics,
            policy="standard",
            clock=clock,
        )
        self.endpoint_limiter = EndpointRateLimiter.from_settings(self.rate_limiter, self.config.endpoint_rate_limits)
        rtb = self.presets["rtb"]
        self.rtb_limiter = RTBRateLimiter(
            rtb.max_requests,
            store=self.store,
            reconcile_interval=self.config.rtb_reconcile_interval,
            message=rtb.message,
            metrics=self.metrics,
            clock=clock,
        )

        self.podcasts = podcasts if podcasts is not None else OwnerRegistry("podcast")
        self.campaigns: Dict[str, Dict[str, Any]] = {}
        self.audio_uploads: Dict[str, Dict[str, Any]] = {}

        self._setup_pipelines()
        self._setup_admission_middleware()
        self._setup_gateway_routes()

    def _standard(self, name: str, *guards) -> AdmissionPipeline:
        """Identity, then the given guards, then rate limits."""
        stages = [self.identity.stage(), *guards, self.rate_limiter.stage(), self.endpoint_limiter.stage()]
        return AdmissionPipeline(name, stages, metrics=self.metrics)

    def _setup_pipelines(self):
        self.podcast_owner_pipeline = self._standard(
            "podcast_owner", self.access.require_ownership(self.podcasts.resolver("podcast_id"))
        )
        # Uploads spend their own per-IP budget on top of the general one
        self.podcast_upload_pipeline = self._standard(
            "podcast_upload",
            self.access.require_ownership(self.podcasts.resolver("podcast_id")),
            self.rate_limiter.stage(self.presets["upload"], name="rate_limit:upload"),
        )
        self.podcast_create_pipeline = self._standard(
            "podcast_create", self.access.require_role(Role.PUBLISHER, Role.ADMIN)
        )
        self.campaign_pipeline = self._standard(
            "campaign", self.access.require_role(Role.ADVERTISER, Role.ADMIN)
        )
        self.admin_pipeline = self._standard("admin", self.access.require_role(Role.ADMIN))
        # Counted before the key check so failed key attempts use up the budget;
        # successful issuance is handed back by the auth preset's skip_successful.
        self.token_pipeline = AdmissionPipeline(
            "token",
            [
                self.rate_limiter.stage(self.presets["auth"], name="rate_limit:auth"),
                self.identity.stage(allow_bearer=False, allow_api_key=True),
                self.endpoint_limiter.stage(),
            ],
            metrics=self.metrics,
        )
        # Throttle before verifying so a flood is shed without touching credentials
        self.bid_pipeline = AdmissionPipeline(
            "bid",
            [self.rtb_limiter.stage(), self.identity.stage(allow_bearer=False, allow_api_key=True)],
            metrics=self.metrics,
        )

    def _setup_admission_middleware(self):
        """Run completion hooks queued by admitted requests once the status is known."""

        @self.app.middleware("http")
        async def run_admission_hooks(request: Request, call_next):
            hooks: List = []
            setattr(request.state, HOOKS_STATE_ATTR, hooks)
            response = await call_next(request)
            for hook in hooks:
                try:
                    await hook(response.status_code)
                except Exception as exc:
                    self.logger.error("Completion hook failed", error=str(exc), exc_info=True)
            return response

    async def on_startup(self) -> None:
        await self.rtb_limiter.start()

    async def on_shutdown(self) -> None:
        await self.rtb_limiter.stop()
        await self.store.close()

    async def _check_dependencies(self) -> Dict[str, str]:
        return {self.store.name: "ok" if await self.store.ping() else "unavailable"}

    def _setup_gateway_routes(self):
        """Set up gateway routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "gateway",
                "message": "Campfire Ads Platform - Admission Gateway",
                "version": "1.0.0",
            }

        @self.app.post("/api/auth/token")
        async def issue_token(body: TokenRequest, caller=Depends(self.token_pipeline.as_dependency())):
            principal = Principal(id=body.id, email=body.email, role=body.role)
            token = self.identity.issue_token(principal, expires_in=body.expires_in)
            self.logger.info("Token issued", subject=principal.id, role=principal.role.value, issuer=caller.id)
            return {
                "token": token,
                "token_type": "Bearer",
                "expires_in": body.expires_in or self.identity.expires_in,
            }

        @self.app.post("/api/podcasts", status_code=201)
        async def create_podcast(body: PodcastCreate, principal=Depends(self.podcast_create_pipeline.as_dependency())):
            podcast_id = str(uuid.uuid4())
            return await self.podcasts.register(podcast_id, principal.id, **body.model_dump())

        @self.app.get("/api/podcasts/{podcast_id}")
        async def get_podcast(podcast_id: str, principal=Depends(self.podcast_owner_pipeline.as_dependency())):
            podcast = await self.podcasts.get(podcast_id)
            if podcast is None:
                raise NotFoundError("Podcast not found")
            return podcast

        @self.app.put("/api/podcasts/{podcast_id}")
        async def update_podcast(
            podcast_id: str,
            body: PodcastUpdate,
            principal=Depends(self.podcast_owner_pipeline.as_dependency()),
        ):
            try:
                return await self.podcasts.update(podcast_id, **body.model_dump(exclude_none=True))
            except KeyError:
                raise NotFoundError("Podcast not found")

        @self.app.post("/api/podcasts/{podcast_id}/audio", status_code=201)
        async def upload_audio(
            podcast_id: str,
            body: AudioUpload,
            principal=Depends(self.podcast_upload_pipeline.as_dependency()),
        ):
            upload = {
                "id": str(uuid.uuid4()),
                "podcast_id": podcast_id,
                "uploaded_by": principal.id,
                "status": "pending",
                **body.model_dump(),
            }
            self.audio_uploads[upload["id"]] = upload
            self.logger.info("Audio upload accepted", upload_id=upload["id"], podcast_id=podcast_id)
            return upload

        @self.app.post("/api/campaigns", status_code=201)
        async def create_campaign(body: CampaignCreate, principal=Depends(self.campaign_pipeline.as_dependency())):
            campaign = {"id": str(uuid.uuid4()), "advertiser_id": principal.id, **body.model_dump()}
            self.campaigns[campaign["id"]] = campaign
            return campaign

        @self.app.post("/api/rtb/bid")
        async def bid(body: BidRequest, caller=Depends(self.bid_pipeline.as_dependency())):
            return {"id": body.id, "bidder": caller.id, "seatbid": []}

        @self.app.get("/api/admin/rate-limits/{policy}")
        async def rate_limit_status(
            policy: str,
            key: str = Query(..., min_length=1),
            principal=Depends(self.admin_pipeline.as_dependency()),
        ):
            if policy == "standard":
                status = (await self.rate_limiter.get_status(key)).to_dict()
            elif policy == "rtb":
                status = self.rtb_limiter.get_status(key)
            else:
                raise NotFoundError(f"Unknown rate limit policy '{policy}'")
            return {"policy": policy, "key": key, **status}

        @self.app.delete("/api/admin/rate-limits/{policy}")
        async def reset_rate_limit(
            policy: str,
            key: str = Query(..., min_length=1),
            principal=Depends(self.admin_pipeline.as_dependency()),
        ):
            if policy == "standard":
                await self.rate_limiter.reset(key)
            elif policy == "rtb":
                self.rtb_limiter.reset(key)
            else:
                raise NotFoundError(f"Unknown rate limit policy '{policy}'")
            self.logger.info("Rate limit reset by admin", policy=policy, key=key, admin_id=principal.id)
            return {"policy": policy, "key": key, "reset": True}


def create_app(**kwargs):
    """Create FastAPI application."""
    service = GatewayService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
