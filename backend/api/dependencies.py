from functools import lru_cache

from services.orchestrator import RequestOrchestrator


@lru_cache
def get_orchestrator() -> RequestOrchestrator:
    """Process-wide orchestrator; all requests share its current-request slot."""
    return RequestOrchestrator()
