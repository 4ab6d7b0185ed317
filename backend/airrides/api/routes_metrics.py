from fastapi import APIRouter, HTTPException, Request, Response

from airrides.infra.auth import token_matches

router = APIRouter()


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header.split(" ", 1)[1]
    return None


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = request.app.state.app_settings
    token = app_settings.metrics_token
    if app_settings.app_env == "prod" and not token:
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")
    if token:
        provided = _bearer_token(request)
        if not token_matches(provided, token):
            raise HTTPException(status_code=401, detail="Unauthorized")

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
