from .recurring import router as recurring_router
from .clients import router as clients_router, account_router

__all__ = [
    'recurring_router',
    'clients_router',
    'account_router',
]
