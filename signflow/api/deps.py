from typing import Annotated, Generator

from fastapi import Depends, Header, Request
from sqlmodel import Session

from signflow.db import session as session_module
from signflow.services import SigningRuntime, SigningServices, build_services
from signflow.services.context import ActorContext


def get_db() -> Generator[Session, None, None]:
    with session_module.new_session() as session:
        yield session


def get_runtime(request: Request) -> SigningRuntime:
    return request.app.state.runtime


def get_services(
    session: Annotated[Session, Depends(get_db)],
    runtime: Annotated[SigningRuntime, Depends(get_runtime)],
) -> SigningServices:
    return build_services(session, runtime)


def get_actor(
    request: Request,
    x_actor_id: Annotated[str | None, Header()] = None,
    x_forwarded_for: Annotated[str | None, Header()] = None,
    user_agent: Annotated[str | None, Header()] = None,
) -> ActorContext:
    ip_address = None
    if x_forwarded_for:
        ip_address = x_forwarded_for.split(",")[0].strip() or None
    if not ip_address and request.client:
        ip_address = request.client.host
    return ActorContext(
        actor_id=(x_actor_id or "").strip() or None,
        ip_address=ip_address,
        user_agent=user_agent,
    )


ServicesDep = Annotated[SigningServices, Depends(get_services)]
ActorDep = Annotated[ActorContext, Depends(get_actor)]
