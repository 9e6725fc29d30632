"""
Admission gateway package for the Campfire Ads Platform.

Every inbound request passes an admission pipeline before reaching a route
handler:
- Identity: bearer tokens and API keys resolved to a principal
- Access: role and ownership guards
- Rate limiting: shared-store fixed windows, per-endpoint limits and the
  per-process bid fast path

Structure:
- app.main: FastAPI app, routes and pipeline wiring.
- app.auth: Identity resolver and access guards.
- app.ratelimit: Counter stores and the three rate limit policies.
- app.domain: Admission context, stage contract and pipeline driver.
- app.adapters: Resource ownership lookups.
"""
