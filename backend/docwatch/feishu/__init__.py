from fastapi import APIRouter

router = APIRouter(prefix="/webhook", tags=["webhook"])

# Import route modules to register endpoints on the router
from docwatch.feishu import events  # noqa: E402, F401
