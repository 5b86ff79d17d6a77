from typing import Annotated

from fastapi import Depends, Request

from zgproxy.errors import BrokerNotInitialized
from zgproxy.services.context import GatewayContext


def get_context(request: Request) -> GatewayContext:
    context = getattr(request.app.state, "gateway", None)
    if context is None:
        raise BrokerNotInitialized()
    return context


ContextDep = Annotated[GatewayContext, Depends(get_context)]
