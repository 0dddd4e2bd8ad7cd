from fastapi import Header, HTTPException, Request


def get_actor_id(x_actor_id: str | None = Header(default=None, alias='X-Actor-Id')) -> int:
    raw = (x_actor_id or '').strip()
    if not raw.isdigit():
        raise HTTPException(status_code=401, detail='X-Actor-Id header is required')
    return int(raw)


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None
