from fastapi import HTTPException, Request

from cjsync.bootstrap import Services


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="서비스가 아직 준비되지 않았습니다.")
    return services


def is_secure_request(request: Request) -> bool:
    """TLS 직접 연결 또는 프록시 forwarded 헤더로 HTTPS 여부 판단."""
    if request.url.scheme == "https":
        return True
    if request.headers.get("x-forwarded-proto", "").split(",")[0].strip().lower() == "https":
        return True
    return request.headers.get("x-forwarded-ssl", "").lower() == "on"
