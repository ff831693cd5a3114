"""Request-scoped dependencies shared by the routers."""
import threading
from typing import Annotated, TypeAlias

from fastapi import Depends, Header, Request

from app.core.security import Identity, parse_bearer
from app.services.container import Services, build_services

_build_lock = threading.Lock()


def get_services(request: Request) -> Services:
    """Services attached to the app, built on first use when none were injected."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        with _build_lock:
            services = getattr(request.app.state, "services", None)
            if services is None:
                services = build_services()
                request.app.state.services = services
    return services


ServicesDep: TypeAlias = Annotated[Services, Depends(get_services)]


def get_current_identity(
    services: ServicesDep,
    authorization: Annotated[str | None, Header()] = None,
) -> Identity:
    """Verify the Firebase ID token and make sure the user has a record."""
    identity = services.identity.verify(parse_bearer(authorization))
    services.lifecycle.ensure_record(identity.uid, identity.email)
    return identity


CurrentIdentityDep: TypeAlias = Annotated[Identity, Depends(get_current_identity)]
