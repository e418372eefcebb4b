from app.services.order_session import (
    OrderSession,
    OrderSessionService,
)
from app.services.order_token import (
    ChatOrderToken,
    CrmOrderToken,
    InvalidToken,
    OrderTokenCodec,
)
from app.services.state_machine import (
    InvalidTransitionError,
    OrderStep,
    advance,
    can_transition,
    next_step,
    transition,
)
