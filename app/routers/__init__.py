from .billing import router as billing_router
