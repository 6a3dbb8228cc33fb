"""System prompt assembly: template variables, the user's step and safe profile fields."""

import re
from dataclasses import dataclass, field
from typing import Optional

from app.config import settings
from app.models import ConversationProfile, Order
from app.services.order_ledger import format_amount
from app.services.profile_service import (
    DEFAULT_PROMPT_CONTEXT_FIELD_MAX_LENGTH,
    PROFILE_FIELD_RULES,
    PROMPT_SAFE_FIELDS,
    profile_to_dict,
)
from app.services.step_machine import ConversationStep, allowed_next_actions

INCLUDED = "included"
PARTIAL = "partial"
SKIPPED = "skipped"


@dataclass
class PromptContextResult:
    status: str
    section: Optional[str] = None
    included_fields: list[str] = field(default_factory=list)
    excluded_fields: list[str] = field(default_factory=list)


def build_user_prompt_context(
    profile: Optional[dict], max_field_length: Optional[int] = None
) -> PromptContextResult:
    """Render the prompt-safe profile fields as a [USER_PROFILE_CONTEXT] block.

    Values are whitespace-collapsed and cut to the smaller of the field's own
    limit and ``max_field_length``. Sensitive fields never appear.
    """
    if not profile:
        return PromptContextResult(status=SKIPPED)

    limit = int(max_field_length) if max_field_length and max_field_length > 0 else DEFAULT_PROMPT_CONTEXT_FIELD_MAX_LENGTH

    lines = []
    included = []
    for name in PROMPT_SAFE_FIELDS:
        value = profile.get(name)
        if value is None:
            continue
        text = re.sub(r"\s+", " ", str(value)).strip()
        if not text:
            continue
        field_limit = PROFILE_FIELD_RULES[name][0]
        lines.append(f"{name}={text[: min(field_limit, limit) if field_limit else limit]}")
        included.append(name)

    excluded = sorted(name for name in profile if name not in PROMPT_SAFE_FIELDS)
    if not lines:
        return PromptContextResult(status=SKIPPED, included_fields=included, excluded_fields=excluded)

    return PromptContextResult(
        status=INCLUDED if len(included) == len(PROMPT_SAFE_FIELDS) else PARTIAL,
        section="\n".join(["[USER_PROFILE_CONTEXT]", *lines]),
        included_fields=included,
        excluded_fields=excluded,
    )


def apply_prompt_variables(prompt: str) -> str:
    """Substitute {{key}}, {key} and ${key} placeholders."""
    replacements = {
        "adminName": settings.admin_name,
        "contactPrice": format_amount(settings.contact_price),
        "vipPrice": format_amount(settings.vip_price),
        "adPrice": format_amount(settings.ad_price),
    }
    output = prompt or ""
    for key, value in replacements.items():
        pattern = re.compile(r"\{\{" + key + r"\}\}|\$\{" + key + r"\}|\{" + key + r"\}")
        output = pattern.sub(lambda _: value, output)
    return output


def build_system_prompt(
    step: ConversationStep,
    profile: Optional[ConversationProfile] = None,
    open_order: Optional[Order] = None,
    template: Optional[str] = None,
) -> str:
    parts = [apply_prompt_variables(template if template is not None else settings.system_prompt)]

    state_lines = [
        "[CONVERSATION_STATE]",
        f"current_step={step.value}",
        f"allowed_next_actions={','.join(allowed_next_actions(step))}",
    ]
    if open_order is not None:
        state_lines.append(f"order_type={open_order.order_type}")
        state_lines.append(f"order_status={open_order.status}")
    parts.append("\n".join(state_lines))

    context = build_user_prompt_context(profile_to_dict(profile) if profile else None)
    if context.section:
        parts.append(context.section)
    return "\n\n".join(parts)
