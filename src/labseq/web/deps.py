from typing import Annotated, cast

from fastapi import Depends, Header, Request

from labseq.app import App
from labseq.core.modules.audit.models import Actor


async def get_app(request: Request) -> App:
    return cast(App, request.app.state.app)


async def get_actor(
    x_actor_id: Annotated[str | None, Header(description="Id of the acting user")] = None,
    x_actor_name: Annotated[str | None, Header(description="Display name of the acting user")] = None,
    x_actor_role: Annotated[str | None, Header(description="Role of the acting user")] = None,
) -> Actor:
    """Build the audit actor from optional request headers; missing headers mean the system."""
    return Actor(user_id=x_actor_id, name=x_actor_name, role=x_actor_role)


# Type aliases for dependencies
AppDep = Annotated[App, Depends(get_app)]
ActorDep = Annotated[Actor, Depends(get_actor)]
