# ============================================================================
# Budget Request Service
# API Routes Module
# ============================================================================

from app.api.budget_requests import router as budget_requests_router

__all__ = ["budget_requests_router"]
