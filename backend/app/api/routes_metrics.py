import secrets

from fastapi import APIRouter, HTTPException, Request, Response

router = APIRouter()


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return None


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    """Prometheus scrape endpoint; a configured token is always enforced."""
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not getattr(metrics_client, "enabled", False):
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "metrics_token", None)
    if token:
        provided = _bearer_token(request)
        if not provided or not secrets.compare_digest(provided, token):
            raise HTTPException(status_code=401, detail="Unauthorized")
    elif getattr(app_settings, "app_env", "dev") == "prod":
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
