"""Step tables, prompts, keyboards and summaries for the configuration wizard."""

from __future__ import annotations

from datetime import datetime

from tempo.channels.base import InlineButton, Keyboard
from tempo.scheduler.models import RepeatPolicy, ScheduleKind
from tempo.wizard.models import PendingWizardState, WizardStep

STEP_ORDER: dict[ScheduleKind, list[WizardStep]] = {
    ScheduleKind.MESSAGE: [
        WizardStep.AWAITING_CONTENT,
        WizardStep.AWAITING_MEDIA,
        WizardStep.AWAITING_HOUR,
        WizardStep.AWAITING_MINUTE,
        WizardStep.AWAITING_REPEAT,
        WizardStep.AWAITING_CONFIRM,
    ],
    ScheduleKind.PAYMENT: [
        WizardStep.AWAITING_RECIPIENT,
        WizardStep.AWAITING_TOKEN,
        WizardStep.AWAITING_AMOUNT,
        WizardStep.AWAITING_DATE,
        WizardStep.AWAITING_HOUR,
        WizardStep.AWAITING_MINUTE,
        WizardStep.AWAITING_REPEAT,
        WizardStep.AWAITING_CONFIRM,
    ],
}

# Fields collected by each step, with their cleared value
STEP_FIELDS: dict[WizardStep, dict[str, object]] = {
    WizardStep.AWAITING_CONTENT: {"prompt": None},
    WizardStep.AWAITING_MEDIA: {"image_file_id": None, "media_done": False},
    WizardStep.AWAITING_RECIPIENT: {"recipient_username": None, "recipient_address": None},
    WizardStep.AWAITING_TOKEN: {"symbol": None, "token_type": None, "decimals": None},
    WizardStep.AWAITING_AMOUNT: {"amount": None, "amount_smallest_units": None},
    WizardStep.AWAITING_DATE: {"run_date": None},
    WizardStep.AWAITING_HOUR: {"hour": None},
    WizardStep.AWAITING_MINUTE: {"minute": None},
    WizardStep.AWAITING_REPEAT: {"repeat": None},
    WizardStep.AWAITING_CONFIRM: {},
}

# Steps whose input comes as free text
TEXT_STEPS = frozenset(
    {
        WizardStep.AWAITING_CONTENT,
        WizardStep.AWAITING_RECIPIENT,
        WizardStep.AWAITING_TOKEN,
        WizardStep.AWAITING_AMOUNT,
        WizardStep.AWAITING_DATE,
        WizardStep.AWAITING_HOUR,
        WizardStep.AWAITING_MINUTE,
    }
)

REPEAT_CHOICES: dict[ScheduleKind, list[str]] = {
    ScheduleKind.MESSAGE: [
        "none", "5m", "15m", "30m", "45m", "1h", "3h", "6h", "12h", "1d", "1w", "1mo",
    ],
    ScheduleKind.PAYMENT: ["1d", "1w", "2w", "4w"],
}

# Owner-selectable edit targets: field name → (button label, steps re-collected)
EDIT_FIELDS: dict[ScheduleKind, dict[str, tuple[str, list[WizardStep]]]] = {
    ScheduleKind.MESSAGE: {
        "content": ("📝 Prompt", [WizardStep.AWAITING_CONTENT]),
        "media": ("🖼️ Image", [WizardStep.AWAITING_MEDIA]),
        "time": ("🕐 Time", [WizardStep.AWAITING_HOUR, WizardStep.AWAITING_MINUTE]),
        "repeat": ("🔁 Repeat", [WizardStep.AWAITING_REPEAT]),
    },
    ScheduleKind.PAYMENT: {
        "recipient": ("👤 Recipient", [WizardStep.AWAITING_RECIPIENT]),
        "token": ("🪙 Token", [WizardStep.AWAITING_TOKEN, WizardStep.AWAITING_AMOUNT]),
        "amount": ("💰 Amount", [WizardStep.AWAITING_AMOUNT]),
        "schedule": (
            "📅 Date/Time",
            [WizardStep.AWAITING_DATE, WizardStep.AWAITING_HOUR, WizardStep.AWAITING_MINUTE],
        ),
        "repeat": ("🔁 Repeat", [WizardStep.AWAITING_REPEAT]),
    },
}

KIND_NOUN = {ScheduleKind.MESSAGE: "scheduled prompt", ScheduleKind.PAYMENT: "scheduled payment"}

WIZARD_PREFIX = "wiz"


# -- Navigation ----------------------------------------------------------------


def first_step(kind: ScheduleKind) -> WizardStep:
    return STEP_ORDER[kind][0]


def next_step(kind: ScheduleKind, step: WizardStep) -> WizardStep:
    order = STEP_ORDER[kind]
    index = order.index(step)
    return order[min(index + 1, len(order) - 1)]


def previous_step(kind: ScheduleKind, step: WizardStep) -> WizardStep | None:
    order = STEP_ORDER[kind]
    index = order.index(step)
    return order[index - 1] if index > 0 else None


def clear_steps(state: PendingWizardState, steps: list[WizardStep]) -> None:
    for step in steps:
        for name, empty in STEP_FIELDS[step].items():
            setattr(state, name, empty)


def reset_from_step(state: PendingWizardState, step: WizardStep) -> None:
    """Clear the fields of ``step`` and of every step after it."""
    order = STEP_ORDER[state.kind]
    clear_steps(state, order[order.index(step) :])


def is_filled(state: PendingWizardState, step: WizardStep) -> bool:
    if step == WizardStep.AWAITING_MEDIA:
        return state.media_done
    return all(getattr(state, name) is not None for name in STEP_FIELDS[step])


def is_complete(state: PendingWizardState) -> bool:
    """Every step before confirm has its fields."""
    return all(is_filled(state, step) for step in STEP_ORDER[state.kind][:-1])


def edit_steps(kind: ScheduleKind, field: str) -> list[WizardStep]:
    try:
        return EDIT_FIELDS[kind][field][1]
    except KeyError:
        raise ValueError(f"Unknown field {field!r} for {kind} schedules") from None


# -- Callback data -------------------------------------------------------------


def wizard_data(action: str, arg: str | int | None = None) -> str:
    return f"{WIZARD_PREFIX}:{action}" if arg is None else f"{WIZARD_PREFIX}:{action}:{arg}"


def parse_wizard_data(data: str) -> tuple[str, str | None]:
    """``wiz:hour:9`` → ("hour", "9"); ``wiz:back`` → ("back", None)."""
    _, _, rest = data.partition(":")
    action, _, arg = rest.partition(":")
    return action, (arg or None)


# -- Keyboards -----------------------------------------------------------------


def _rows(buttons: list[InlineButton], width: int) -> Keyboard:
    return [buttons[i : i + width] for i in range(0, len(buttons), width)]


def nav_row(state: PendingWizardState) -> list[InlineButton]:
    row = []
    if previous_step(state.kind, state.step) is not None:
        row.append(InlineButton("↩️ Back", wizard_data("back")))
    row.append(InlineButton("❌ Cancel", wizard_data("cancel")))
    return row


def keyboard_for(state: PendingWizardState) -> Keyboard:
    step = state.step
    rows: Keyboard = []
    if step == WizardStep.AWAITING_HOUR:
        rows = _rows([InlineButton(f"{h:02d}", wizard_data("hour", h)) for h in range(24)], 6)
    elif step == WizardStep.AWAITING_MINUTE:
        rows = _rows(
            [InlineButton(f"{m:02d}", wizard_data("minute", m)) for m in range(0, 60, 5)], 6
        )
    elif step == WizardStep.AWAITING_REPEAT:
        rows = _rows(
            [
                InlineButton(RepeatPolicy.from_choice(code).label, wizard_data("repeat", code))
                for code in REPEAT_CHOICES[state.kind]
            ],
            3,
        )
    elif step == WizardStep.AWAITING_MEDIA:
        rows = [[InlineButton("⏭ Skip image", wizard_data("skip"))]]
    elif step == WizardStep.AWAITING_CONFIRM:
        label = "✔️ Save changes" if state.is_edit else "✔️ Create schedule"
        rows = [[InlineButton(label, wizard_data("confirm"))]]
    return [*rows, nav_row(state)]


# -- Texts ---------------------------------------------------------------------

_PROMPTS: dict[WizardStep, str] = {
    WizardStep.AWAITING_CONTENT: "📝 Send the prompt to schedule as a reply to this message.",
    WizardStep.AWAITING_MEDIA: "🖼️ Send an image to include with the prompt, or skip.",
    WizardStep.AWAITING_RECIPIENT: "👤 Who should receive the payment? Send their @username.",
    WizardStep.AWAITING_TOKEN: "🪙 Which token? Send its symbol (e.g., APT, USDC).",
    WizardStep.AWAITING_AMOUNT: "💰 How much {symbol} per payment?",
    WizardStep.AWAITING_DATE: "📅 Start date? Send it as YYYY-MM-DD (UTC).",
    WizardStep.AWAITING_HOUR: "🕐 Select start hour (UTC)",
    WizardStep.AWAITING_MINUTE: "🕐 Select start minute (UTC)",
    WizardStep.AWAITING_REPEAT: "🔁 How often should it repeat?",
}


def prompt_for(state: PendingWizardState, next_run: datetime | None = None) -> str:
    if state.step == WizardStep.AWAITING_CONFIRM:
        return f"{summarize(state, next_run)}\n\nConfirm?"
    return _PROMPTS[state.step].format(symbol=state.symbol or "")


def _short(text: str | None, limit: int = 180) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[: limit - 1] + "…"


def summarize(state: PendingWizardState, next_run: datetime | None = None) -> str:
    repeat = RepeatPolicy.from_choice(state.repeat).label if state.repeat else "-"
    start = next_run.strftime("%Y-%m-%d %H:%M") if next_run else "-"
    if state.kind == ScheduleKind.PAYMENT:
        return "\n".join(
            [
                "💸 Payment schedule (UTC)",
                f"• To: @{state.recipient_username}",
                f"• Amount: {state.amount} {state.symbol}",
                f"• Next run: {start} UTC",
                f"• Repeat: {repeat}",
            ]
        )
    return "\n".join(
        [
            "🗓️ Schedule summary (UTC)",
            f"• Prompt: {_short(state.prompt)}",
            f"• Image: {'attached' if state.image_file_id else 'none'}",
            f"• Next run: {start} UTC",
            f"• Repeat: {repeat}",
        ]
    )
