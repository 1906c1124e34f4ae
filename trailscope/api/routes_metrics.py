from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request):
    # export the registry pinned on app.state, not the process default
    tm = getattr(request.app.state, "trailscope_metrics", None)
    reg = tm["registry"] if isinstance(tm, dict) and "registry" in tm else REGISTRY
    return Response(content=generate_latest(reg), media_type=CONTENT_TYPE_LATEST)
