"""
Panel interaction endpoint.

The chat bot forwards every button press, modal submit and select-menu pick
of the key panel to POST /api/interactions. Component ids form a closed enum;
each id maps to exactly one handler in INTERACTION_HANDLERS.

Every accepted interaction first passes the per-identity cooldown (5 s by
default). Replies carry the text to show and, for multi-key users, the
options of the follow-up select menu or buttons.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from keyledger.core.errors import CooldownActive, InvalidRequest, KeyNotFound
from keyledger.core.structured_logging import identity_var
from keyledger.dependencies import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

OPTION_LABEL_MAX = 25
NO_KEYS_MESSAGE = "You don't have an active key yet!"


class InteractionId(str, enum.Enum):
    REDEEM_SUBMIT = "redeem_submit"
    GETSCRIPT_START = "getscript_start"
    GETSCRIPT_SELECT = "getscript_select"
    RESET_START = "reset_start"
    RESET_ALL_CONFIRM = "reset_all_confirm"
    RESET_CHOOSE_KEY = "reset_choose_key"
    RESET_SELECT_KEY = "reset_select_key"
    KEYS_STATUS = "keys_status"


class InteractionRequest(BaseModel):
    interaction_id: str = Field(..., description="Component id of the pressed button / submitted form")
    identity: str = Field(..., min_length=1, max_length=64)
    alias_label: Optional[str] = Field(None, max_length=128)
    values: List[str] = Field(default_factory=list, description="Select-menu values")
    key_input: Optional[str] = Field(None, max_length=128, description="Redeem form text input")


class InteractionOption(BaseModel):
    label: str
    value: str


class InteractionReply(BaseModel):
    content: str
    component_id: Optional[str] = None
    options: List[InteractionOption] = Field(default_factory=list)


@dataclass
class InteractionContext:
    services: Services
    identity: str
    alias_label: Optional[str]
    values: List[str] = field(default_factory=list)
    key_input: Optional[str] = None

    async def active_keys(self) -> List[str]:
        return await self.services.keys.get_user_active_keys(self.identity, self.alias_label)

    async def selected_key(self) -> str:
        """The single select-menu value, which must be one of the identity's keys."""
        if len(self.values) != 1:
            raise InvalidRequest(detail=f"expected one selected value, got {len(self.values)}")
        key = self.values[0]
        if key not in await self.active_keys():
            raise KeyNotFound(key)
        return key


Handler = Callable[[InteractionContext], Awaitable[InteractionReply]]


def _key_options(keys: List[str]) -> List[InteractionOption]:
    return [InteractionOption(label=k[:OPTION_LABEL_MAX], value=k) for k in keys]


def _script_reply(ctx: InteractionContext, key: str) -> InteractionReply:
    script = ctx.services.keys.build_loader_script(key)
    return InteractionReply(content=f"**Script:**\n```lua\n{script}\n```")


# ── Handlers ──────────────────────────────────────────────────────────

async def _redeem_submit(ctx: InteractionContext) -> InteractionReply:
    if ctx.key_input is None:
        raise InvalidRequest(detail="redeem_submit requires key_input")
    result = await ctx.services.keys.redeem_key(ctx.identity, ctx.alias_label, ctx.key_input)
    return InteractionReply(
        content=f"Key `{result.key}` redeemed!\nYou can now use every feature of the panel.",
    )


async def _getscript_start(ctx: InteractionContext) -> InteractionReply:
    keys = await ctx.active_keys()
    if not keys:
        return InteractionReply(content=NO_KEYS_MESSAGE)
    if len(keys) == 1:
        return _script_reply(ctx, keys[0])
    return InteractionReply(
        content="You have several keys. Pick one for the script:",
        component_id=InteractionId.GETSCRIPT_SELECT.value,
        options=_key_options(keys),
    )


async def _getscript_select(ctx: InteractionContext) -> InteractionReply:
    return _script_reply(ctx, await ctx.selected_key())


async def _reset_start(ctx: InteractionContext) -> InteractionReply:
    keys = await ctx.active_keys()
    if not keys:
        return InteractionReply(content=NO_KEYS_MESSAGE)
    if len(keys) == 1:
        await ctx.services.keys.reset_device_binding(keys[0])
        return InteractionReply(content=f"Device binding for key `{keys[0]}` has been reset.")
    return InteractionReply(
        content=f"You have **{len(keys)}** active keys.\nReset every device binding or pick one key?",
        options=[
            InteractionOption(label="Reset all", value=InteractionId.RESET_ALL_CONFIRM.value),
            InteractionOption(label="Choose a key", value=InteractionId.RESET_CHOOSE_KEY.value),
        ],
    )


async def _reset_all_confirm(ctx: InteractionContext) -> InteractionReply:
    count = await ctx.services.keys.reset_all_device_bindings(ctx.identity, ctx.alias_label)
    if count == 0:
        return InteractionReply(content=NO_KEYS_MESSAGE)
    return InteractionReply(content=f"Device bindings for **{count}** keys have been reset.")


async def _reset_choose_key(ctx: InteractionContext) -> InteractionReply:
    keys = await ctx.active_keys()
    if not keys:
        return InteractionReply(content=NO_KEYS_MESSAGE)
    return InteractionReply(
        content="Pick the key whose device binding should be reset:",
        component_id=InteractionId.RESET_SELECT_KEY.value,
        options=_key_options(keys),
    )


async def _reset_select_key(ctx: InteractionContext) -> InteractionReply:
    key = await ctx.selected_key()
    await ctx.services.keys.reset_device_binding(key)
    return InteractionReply(content=f"Device binding for key `{key}` has been reset.")


async def _keys_status(ctx: InteractionContext) -> InteractionReply:
    keys = await ctx.active_keys()
    if not keys:
        return InteractionReply(content=NO_KEYS_MESSAGE)
    listing = "\n".join(f"• `{k}`" for k in keys)
    return InteractionReply(content=f"You have **{len(keys)}** active keys:\n{listing}")


INTERACTION_HANDLERS: Dict[InteractionId, Handler] = {
    InteractionId.REDEEM_SUBMIT: _redeem_submit,
    InteractionId.GETSCRIPT_START: _getscript_start,
    InteractionId.GETSCRIPT_SELECT: _getscript_select,
    InteractionId.RESET_START: _reset_start,
    InteractionId.RESET_ALL_CONFIRM: _reset_all_confirm,
    InteractionId.RESET_CHOOSE_KEY: _reset_choose_key,
    InteractionId.RESET_SELECT_KEY: _reset_select_key,
    InteractionId.KEYS_STATUS: _keys_status,
}


def check_handler_table(handlers: Dict[InteractionId, Handler]) -> None:
    missing = set(InteractionId) - set(handlers)
    if missing:
        raise RuntimeError(f"No handler for interaction ids: {sorted(i.value for i in missing)}")


check_handler_table(INTERACTION_HANDLERS)


# ── Endpoint ──────────────────────────────────────────────────────────

@router.post("/interactions", response_model=InteractionReply)
async def handle_interaction(
    body: InteractionRequest,
    services: Services = Depends(get_services),
):
    """Dispatch one panel interaction for *body.identity*."""
    try:
        interaction_id = InteractionId(body.interaction_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown interaction: {body.interaction_id}",
        )

    limiter = services.limiter
    remaining = limiter.check_cooldown(body.identity)
    if remaining > 0:
        raise CooldownActive(body.identity, remaining)
    limiter.set_cooldown(body.identity, services.settings.interaction_cooldown_s)

    token = identity_var.set(body.identity)
    try:
        ctx = InteractionContext(
            services=services,
            identity=body.identity,
            alias_label=body.alias_label,
            values=body.values,
            key_input=body.key_input,
        )
        reply = await INTERACTION_HANDLERS[interaction_id](ctx)
        logger.info("interaction_handled", extra={"interaction": interaction_id.value})
        return reply
    finally:
        identity_var.reset(token)
