# SchoolDesk API Routes
from schooldesk.api.router import api_router

__all__ = ["api_router"]
