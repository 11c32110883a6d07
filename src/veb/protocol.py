"""Wire protocol for veb.

Commands and responses travel as newline-delimited JSON over the daemon's
Unix domain socket: the client writes exactly one command line, the daemon
answers with exactly one response line.

Command format (wire field names are camelCase)::

    {"id": "3f2a...", "action": "click", "selector": "#submit", "clickCount": 2}

Response format::

    {"id": "3f2a...", "success": true, "data": {"clicked": true}}
    {"id": "3f2a...", "success": false, "error": "Timeout 5000ms exceeded."}

Every action has its own pydantic model; together they form a union
discriminated on ``action``.  Decoding distinguishes two failure classes:

* :class:`ProtocolError` -- the input is not a JSON object with an ``id``,
  so nothing can be correlated.
* :class:`CommandValidationError` -- the envelope is fine but a field is
  missing or violates its constraint.  The caller's ``id`` is preserved.
"""

from __future__ import annotations

import json
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, Field(min_length=1)]


class ProtocolError(Exception):
    """The message could not be parsed as a protocol envelope."""


class CommandValidationError(Exception):
    """A well-formed command failed schema validation.

    ``issues`` is a list of ``(field_path, message)`` pairs using wire
    field names.
    """

    def __init__(self, command_id: str | None, issues: list[tuple[str, str]]) -> None:
        self.command_id = command_id
        self.issues = issues
        detail = ", ".join(f"{path}: {message}" for path, message in issues)
        super().__init__(f"Validation error: {detail}")

    @property
    def fields(self) -> list[str]:
        return [path for path, _ in self.issues]


# ---------------------------------------------------------------------------
# Command models
# ---------------------------------------------------------------------------


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    width: int = Field(gt=0)
    height: int = Field(gt=0)


class BaseCommand(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: NonEmptyStr


class LaunchCommand(BaseCommand):
    action: Literal["launch"] = "launch"
    headless: bool | None = None
    viewport: Viewport | None = None
    browser: Literal["chromium", "firefox", "webkit"] | None = None


class NavigateCommand(BaseCommand):
    action: Literal["navigate"] = "navigate"
    url: NonEmptyStr
    wait_until: Literal["load", "domcontentloaded", "networkidle"] | None = None


class ClickCommand(BaseCommand):
    action: Literal["click"] = "click"
    selector: NonEmptyStr
    button: Literal["left", "right", "middle"] | None = None
    click_count: int | None = Field(default=None, gt=0)
    delay: float | None = Field(default=None, ge=0)


class TypeCommand(BaseCommand):
    action: Literal["type"] = "type"
    selector: NonEmptyStr
    text: str
    delay: float | None = Field(default=None, ge=0)
    clear: bool | None = None


class PressCommand(BaseCommand):
    action: Literal["press"] = "press"
    key: NonEmptyStr
    selector: NonEmptyStr | None = None


class ScreenshotCommand(BaseCommand):
    action: Literal["screenshot"] = "screenshot"
    path: NonEmptyStr | None = None
    full_page: bool | None = None
    selector: NonEmptyStr | None = None
    format: Literal["png", "jpeg"] | None = None
    quality: int | None = Field(default=None, ge=0, le=100)


class SnapshotCommand(BaseCommand):
    action: Literal["snapshot"] = "snapshot"


class EvaluateCommand(BaseCommand):
    action: Literal["evaluate"] = "evaluate"
    script: NonEmptyStr
    args: list[Any] | None = None


class WaitCommand(BaseCommand):
    action: Literal["wait"] = "wait"
    selector: NonEmptyStr | None = None
    text: NonEmptyStr | None = None
    timeout: float | None = Field(default=None, gt=0)
    state: Literal["attached", "detached", "visible", "hidden"] | None = None

    @field_validator("text")
    @classmethod
    def _text_excludes_selector(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v is not None and info.data.get("selector") is not None:
            raise ValueError("cannot be combined with selector")
        return v

    @model_validator(mode="after")
    def _state_needs_target(self) -> WaitCommand:
        if self.state is not None and self.selector is None and self.text is None:
            raise ValueError("state requires selector or text")
        return self


class ScrollCommand(BaseCommand):
    action: Literal["scroll"] = "scroll"
    selector: NonEmptyStr | None = None
    x: float | None = None
    y: float | None = None
    direction: Literal["up", "down", "left", "right"] | None = None
    amount: float | None = Field(default=None, gt=0)


class SelectCommand(BaseCommand):
    action: Literal["select"] = "select"
    selector: NonEmptyStr
    values: list[str]

    @field_validator("values", mode="before")
    @classmethod
    def _single_value_to_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v


class HoverCommand(BaseCommand):
    action: Literal["hover"] = "hover"
    selector: NonEmptyStr


class ContentCommand(BaseCommand):
    action: Literal["content"] = "content"
    selector: NonEmptyStr | None = None


class CloseCommand(BaseCommand):
    action: Literal["close"] = "close"


class TabNewCommand(BaseCommand):
    action: Literal["tab_new"] = "tab_new"


class TabListCommand(BaseCommand):
    action: Literal["tab_list"] = "tab_list"


class TabSwitchCommand(BaseCommand):
    action: Literal["tab_switch"] = "tab_switch"
    index: int = Field(ge=0)


class TabCloseCommand(BaseCommand):
    action: Literal["tab_close"] = "tab_close"
    index: int | None = Field(default=None, ge=0)


class WindowNewCommand(BaseCommand):
    action: Literal["window_new"] = "window_new"
    viewport: Viewport | None = None


COMMAND_TYPES: tuple[type[BaseCommand], ...] = (
    LaunchCommand,
    NavigateCommand,
    ClickCommand,
    TypeCommand,
    PressCommand,
    ScreenshotCommand,
    SnapshotCommand,
    EvaluateCommand,
    WaitCommand,
    ScrollCommand,
    SelectCommand,
    HoverCommand,
    ContentCommand,
    CloseCommand,
    TabNewCommand,
    TabListCommand,
    TabSwitchCommand,
    TabCloseCommand,
    WindowNewCommand,
)

ACTIONS: frozenset[str] = frozenset(
    cls.model_fields["action"].default for cls in COMMAND_TYPES
)

Command = Annotated[
    Union[
        LaunchCommand,
        NavigateCommand,
        ClickCommand,
        TypeCommand,
        PressCommand,
        ScreenshotCommand,
        SnapshotCommand,
        EvaluateCommand,
        WaitCommand,
        ScrollCommand,
        SelectCommand,
        HoverCommand,
        ContentCommand,
        CloseCommand,
        TabNewCommand,
        TabListCommand,
        TabSwitchCommand,
        TabCloseCommand,
        WindowNewCommand,
    ],
    Field(discriminator="action"),
]

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def _format_issues(exc: ValidationError) -> list[tuple[str, str]]:
    """Turn pydantic errors into ``(field_path, message)`` pairs.

    The discriminated union prefixes every location with the action tag;
    that prefix is dropped so paths name the command's own fields.
    """
    issues: list[tuple[str, str]] = []
    for err in exc.errors():
        err_type = err["type"]
        if err_type == "union_tag_invalid":
            tag = err.get("ctx", {}).get("tag")
            issues.append(("action", f"Unknown action '{tag}'"))
            continue
        if err_type == "union_tag_not_found":
            issues.append(("action", "Field required"))
            continue
        loc = list(err["loc"])
        if loc and loc[0] in ACTIONS:
            loc = loc[1:]
        path = ".".join(str(part) for part in loc) or "command"
        issues.append((path, err["msg"]))
    return issues


# ---------------------------------------------------------------------------
# Command encode / decode
# ---------------------------------------------------------------------------


def new_command_id() -> str:
    """Return a fresh correlation id."""
    return uuid.uuid4().hex


def build_command(action: str, command_id: str | None = None, **fields: Any) -> Command:
    """Validate keyword arguments into a command model.

    Field names may be given in snake_case or in their wire (camelCase) form.
    Raises :class:`CommandValidationError` on invalid input.
    """
    cid = command_id or new_command_id()
    raw = {"id": cid, "action": action, **fields}
    try:
        return _command_adapter.validate_python(raw)
    except ValidationError as exc:
        raise CommandValidationError(cid, _format_issues(exc)) from exc


def encode_command(command: BaseCommand) -> bytes:
    """Serialize *command* to a newline-terminated JSON line."""
    return command.model_dump_json(by_alias=True, exclude_none=True).encode() + b"\n"


def decode_command(data: bytes | str) -> Command:
    """Parse one command line.

    Raises :class:`ProtocolError` when the input is not a JSON object with a
    string ``id`` and :class:`CommandValidationError` when the fields are invalid.
    """
    try:
        raw = json.loads(data)
    except ValueError as exc:
        raise ProtocolError(f"Invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ProtocolError("Command must be a JSON object")
    command_id = raw.get("id")
    if command_id is None:
        raise ProtocolError("Command is missing 'id'")
    if not isinstance(command_id, str) or not command_id:
        raise ProtocolError("Command 'id' must be a non-empty string")

    try:
        return _command_adapter.validate_python(raw)
    except ValidationError as exc:
        raise CommandValidationError(command_id, _format_issues(exc)) from exc


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class Response(BaseModel):
    """A reply to exactly one command.

    ``id`` is ``None`` only for protocol-level errors, where the input never
    yielded a correlation id.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str | None
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> Response:
        if self.success:
            if self.data is None or self.error is not None:
                raise ValueError("a successful response carries data and no error")
        elif self.error is None or self.data is not None:
            raise ValueError("a failed response carries an error and no data")
        return self


def success_response(command_id: str, data: dict[str, Any]) -> Response:
    return Response(id=command_id, success=True, data=data)


def error_response(command_id: str | None, error: str) -> Response:
    return Response(id=command_id, success=False, error=error)


def encode_response(response: Response) -> bytes:
    """Serialize *response* to a newline-terminated JSON line.

    Only the populated side of ``data``/``error`` is written.
    """
    payload: dict[str, Any] = {"id": response.id, "success": response.success}
    if response.success:
        payload["data"] = response.data
    else:
        payload["error"] = response.error
    return json.dumps(payload, default=str).encode() + b"\n"


def decode_response(data: bytes | str) -> Response:
    """Parse one response line, raising :class:`ProtocolError` if malformed."""
    try:
        raw = json.loads(data)
    except ValueError as exc:
        raise ProtocolError(f"Invalid JSON in response: {exc}") from exc
    if not isinstance(raw, dict):
        raise ProtocolError("Response must be a JSON object")
    try:
        return Response.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolError(f"Malformed response: {exc}") from exc
