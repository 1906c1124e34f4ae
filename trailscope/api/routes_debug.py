from fastapi import APIRouter, Request

from trailscope.core.settings import Settings

router = APIRouter()

# never exposed: connection strings may carry credentials
_HIDDEN = {"DATABASE_URL", "REPLICA_DATABASE_URL"}


@router.get("/_debug/config")
def debug_config(request: Request):
    settings: Settings = request.app.state.settings
    return {
        "settings": {k: v for k, v in settings.model_dump().items() if k not in _HIDDEN},
        "note": "Do not expose this in production without auth.",
    }
