# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - ask.py: POST /ask and POST /ask/stream (Server-Sent Events)
#   - cache.py: response cache statistics and invalidation
#   - deps.py: lazily built QueryPipeline shared by all requests
# =============================================================================
