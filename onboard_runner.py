# onboard_runner.py

import asyncio
import contextlib
import json
import logging
import time
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Union
from urllib.parse import urlparse

from faker import Faker
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from onboard_errors import (
    ConfigurationError,
    OnboardError,
    QuiescenceTimeout,
    StructuralInconsistency,
    ValidationRejection,
)
from stripe_tasks import click_submit_button

# --- Logging Setup ---
logger = logging.getLogger("OnboardRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.propagate = False # Prevent duplicate logs if root logger is configured

try:
    BUILD_ID = version("stripe-onboard-runner")
except PackageNotFoundError:
    BUILD_ID = "unknown"

__all__ = [
    "onboard", "OnboardRunner", "OnboardOptions", "OnboardValues", "FlowContext",
    "FlowOutcome", "OnboardResult", "ProgressReporter", "get_default_onboard_values",
    "resolve_onboard_values", "has_left_target_site", "fill_out_summary_page", "logger",
    "OnboardError", "ConfigurationError", "ValidationRejection", "StructuralInconsistency",
    "QuiescenceTimeout",
]

# ---------------------------
# Data Models
# ---------------------------

BusinessType = Literal["company", "non_profit", "individual"]

class Address(BaseModel):
    line1: str
    line2: Optional[str] = ""
    city: str
    state: Optional[str] = None
    zip: str

    model_config = ConfigDict(frozen=True)

class OnboardValues(BaseModel):
    """Every value the onboarding form may ask for. Read-only for step tasks."""
    account_number: str
    address: Address
    business_type: BusinessType
    company_name: str
    company_phone: str
    company_tax_id: str
    company_url: str
    date_of_birth: str = Field(..., description="Digits only, MMDDYYYY, as typed into the form")
    country: str = Field(..., min_length=2, max_length=2)
    email: str
    first_name: str
    id_number: str
    last_name: str
    phone: str
    routing_number: Optional[str] = None
    ssn_last_4: str
    title: str

    model_config = ConfigDict(frozen=True)

    @field_validator('country')
    def validate_country(cls, v):
        return v.upper()

class OnboardOptions(BaseModel):
    """Per-invocation configuration. Immutable for the lifetime of a flow."""
    url: str = Field(..., description="Onboarding link the browser starts on")
    headless: bool = Field(default=True, description="Launch the browser without a window")
    silent: bool = Field(default=True, description="Demote progress output to DEBUG")
    values: Optional[Dict[str, Any]] = Field(default=None, description="Overrides merged over the generated default values")
    debug: Union[bool, Dict[str, Any]] = Field(
        default=False,
        description=(
            "Falsy: release the browser and re-raise on failure. Truthy (True or an object): "
            "show an in-page alert with diagnostics and leave the browser open for inspection."
        ),
    )
    idle_time_ms: int = Field(default=3000, ge=0, description="Continuous network-idle window required before and after each step")
    idle_timeout_ms: int = Field(default=30000, ge=0, description="Maximum time to wait for the idle window")
    target_host: str = Field(default="stripe.com", description="Host (or parent domain) the flow must stay on")
    viewport_width: int = Field(default=900, gt=0)
    viewport_height: int = Field(default=1000, gt=0)
    locale: str = Field(default="en-US")

    model_config = ConfigDict(frozen=True)

    @field_validator('url')
    def validate_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"url must be an absolute http(s) URL, got '{v}'")
        return v

    @property
    def debug_enabled(self) -> bool:
        # Any payload object, even an empty one, turns debug mode on.
        return self.debug is not False

    @field_validator('target_host')
    def validate_target_host(cls, v):
        host = v.strip().lower().lstrip(".")
        if not host:
            raise ValueError("target_host cannot be empty")
        return host

    @model_validator(mode='after')
    def check_idle_times(self) -> 'OnboardOptions':
        if self.idle_timeout_ms < self.idle_time_ms:
            raise ValueError(f"idle_timeout_ms ({self.idle_timeout_ms}) cannot be smaller than idle_time_ms ({self.idle_time_ms})")
        return self

class FlowContext(BaseModel):
    """State threaded through every step task of one flow execution."""
    session: Any = Field(..., description="Browser session exclusively owned by this flow")
    options: OnboardOptions
    values: OnboardValues

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @property
    def page(self):
        return self.session.page

StepTask = Callable[[FlowContext], Awaitable[None]]

class FlowOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    BENIGNLY_TERMINATED = "benignly_terminated"
    # The automated flow is over but the browser is deliberately left open
    # for a human. Whoever called onboard() owns its cleanup from here on.
    AWAITING_DEBUG_INSPECTION = "awaiting_debug_inspection"

class OnboardResult(BaseModel):
    outcome: FlowOutcome
    steps: List[str] = Field(default_factory=list, description="Names of the step tasks that ran, in order")
    session: Any = Field(default=None, description="Open browser session, only set while awaiting debug inspection")

    model_config = ConfigDict(arbitrary_types_allowed=True)

# ---------------------------
# Default Values
# ---------------------------

_faker = Faker("en_US")

def get_default_onboard_values(country: str = "US") -> Dict[str, Any]:
    """
    Values that pass Stripe's test-mode verification:
    https://stripe.com/docs/connect/testing
    Names, company and contact details are random so accounts are distinguishable.
    """
    first_name = _faker.first_name()
    last_name = _faker.last_name()

    values: Dict[str, Any] = {
        "account_number": "000123456789",
        "address": {
            "line1": "address_full_match",
            "line2": "",
            "city": "Beverly Hills",
            "state": "CA",
            "zip": "90210",
        },
        "country": country.upper(),
        "business_type": "company",
        "company_name": _faker.company(),
        "company_phone": "0000000000",
        "company_tax_id": "000000000",
        "company_url": _faker.url(),
        "date_of_birth": "01011901",
        "email": f"{first_name}.{last_name}@example.com".lower(),
        "first_name": first_name,
        "id_number": "000000000",
        "last_name": last_name,
        "phone": "0000000000",
        "routing_number": "110000000",
        "ssn_last_4": "0000",
        "title": _faker.job(),
    }

    if country.upper() == "DK":
        values["phone"] = "00000000"
        values["company_phone"] = "00000000"
        values["address"]["zip"] = "8000"
        values["address"]["city"] = "Aarhus"
        values["address"].pop("state")
        values["account_number"] = "DK5000400440116243"
        values.pop("routing_number")

    return values

def resolve_onboard_values(options: OnboardOptions) -> OnboardValues:
    """Merge caller overrides over the country defaults and validate the result."""
    overrides = dict(options.values or {})
    country = overrides.get("country") or "US"
    if not isinstance(country, str):
        raise ConfigurationError(f"country must be a two-letter code, got {country!r}")
    merged = {**get_default_onboard_values(country), **overrides}
    try:
        return OnboardValues.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Onboarding values are incomplete or invalid: {e}") from e

# ---------------------------
# Progress Reporting
# ---------------------------

class ProgressReporter:
    """
    Emits a start record and a success/failure record around each tracked action.
    Purely observational: a failing sink is logged and never changes control flow.
    """
    def __init__(self, silent: bool = True, sink: Optional[Callable[[str, str], None]] = None):
        self.level = logging.DEBUG if silent else logging.INFO
        self.sink = sink

    def emit(self, event: str, label: str):
        try:
            if self.sink:
                self.sink(event, label)
            else:
                logger.log(self.level, f"[{event}] {label}")
        except Exception as e:
            logger.warning(f"Progress sink failed on '{event}' for '{label}': {e}")

    @contextlib.contextmanager
    def track(self, label: str):
        self.emit("start", label)
        try:
            yield
        except BaseException:
            self.emit("fail", label)
            raise
        self.emit("succeed", label)

# ---------------------------
# Target Site Check
# ---------------------------

async def has_left_target_site(context: FlowContext) -> bool:
    """
    True when the session has navigated off the target host, which is read as
    "the form finished early". Used both before every step and when a step
    fails.

    Known false-negative risk: a genuine failure that also navigated away is
    indistinguishable from a finished flow from outside the target page, and
    is reported as success. Keep this policy here only.

    An unreadable location counts as still on site so that errors surface.
    """
    try:
        location = await context.session.current_location()
    except Exception as e:
        logger.debug(f"Could not read current location, assuming still on target site: {e}")
        return False
    host = (urlparse(location).hostname or "").lower()
    target = context.options.target_host
    if not host:
        return False
    return not (host == target or host.endswith("." + target))

# ---------------------------
# Epilogue Step
# ---------------------------

SUMMARY_DONE_BUTTON_TESTID = "requirements-index-done-button"
SUMMARY_CONFIRM_BUTTON_SELECTOR = '*[role="dialog"] button.Button--color--blue'

async def fill_out_summary_page(context: FlowContext):
    status_boxes = await context.session.query_all('*[role="status"]')
    if status_boxes:
        # Status boxes on the summary list requirements that are still open.
        raise StructuralInconsistency("Fields were missing in summary despite no errors during flow.")

    await click_submit_button(context, SUMMARY_DONE_BUTTON_TESTID)

    # Stripe sometimes asks to continue while information is still being verified.
    confirm_button = await context.session.query_one(SUMMARY_CONFIRM_BUTTON_SELECTOR)
    if confirm_button:
        await context.session.click(confirm_button)

# ---------------------------
# Onboard Runner Class
# ---------------------------

class OnboardRunner:
    """Runs one onboarding flow against one browser session."""
    def __init__(
        self,
        options: OnboardOptions,
        values: OnboardValues,
        steps: Sequence[StepTask],
        *,
        prologue: Optional[Sequence[StepTask]] = None,
        epilogue: Optional[StepTask] = fill_out_summary_page,
        session_factory: Optional[Callable[[OnboardOptions], Awaitable[Any]]] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.options = options
        self.values = values
        if prologue is None:
            from onboard_flows import PROLOGUE
            prologue = PROLOGUE
        self.tasks: List[StepTask] = [*prologue, *steps] + ([epilogue] if epilogue else [])
        if session_factory is None:
            from browser_session import BrowserSession
            session_factory = BrowserSession.launch
        self.session_factory = session_factory
        self.reporter = reporter or ProgressReporter(silent=options.silent)
        self.executed_steps: List[str] = []

        self.configure_logging(options.debug_enabled)
        logger.info(f"Onboard Runner Initialized: Target Host='{options.target_host}', Business Type={values.business_type}, Country={values.country}, Steps={len(self.tasks)}, Headless={options.headless}")

    def configure_logging(self, debug: bool):
        """Configures the logger level based on the debug flag."""
        log_level = logging.DEBUG if debug else logging.INFO
        logger.setLevel(log_level)
        for handler in logger.handlers:
            handler.setLevel(log_level)

    async def run(self) -> OnboardResult:
        """Bootstrap a session, run every step, and release the session unless debugging."""
        headless_label = " headless" if self.options.headless else ""
        with self.reporter.track(f"Launching{headless_label} browser"):
            session = await self.session_factory(self.options)

        context = FlowContext(session=session, options=self.options, values=self.values)
        flow_start_time = time.monotonic()

        try:
            completed = await self._fill_out_pages(context)
        except asyncio.CancelledError:
            logger.warning("Onboarding flow cancelled, attempting to release the browser session.")
            await self._release_session_quietly(session)
            raise
        except Exception as e:
            return await self._handle_failure(context, e)

        await self._close_session(session)
        flow_duration = time.monotonic() - flow_start_time
        outcome = FlowOutcome.SUCCEEDED if completed else FlowOutcome.BENIGNLY_TERMINATED
        logger.info(f"Onboarding flow finished ({outcome.value}) after {len(self.executed_steps)} steps in {flow_duration:.3f} seconds.")
        return OnboardResult(outcome=outcome, steps=list(self.executed_steps))

    async def _fill_out_pages(self, context: FlowContext) -> bool:
        """
        Runs every task in order. Returns False if the form left the target
        site before all tasks ran, True when the whole sequence ran.
        """
        total_steps = len(self.tasks)
        for i, task in enumerate(self.tasks):
            step_name = getattr(task, "__name__", repr(task))

            with self.reporter.track("Navigating..."):
                await context.session.wait_for_idle(self.options.idle_time_ms, self.options.idle_timeout_ms)

            if await has_left_target_site(context):
                logger.info(f"Left target site before step {i+1}/{total_steps} ({step_name}), treating flow as finished.")
                return False

            heading = await self._read_heading(context)
            logger.debug(f"Step {i+1}/{total_steps}: {step_name} (heading: '{heading}')")
            self.executed_steps.append(step_name)

            step_start_time = time.monotonic()
            with self.reporter.track(heading):
                await task(context)

            await self._raise_on_validation_errors(context)

            with self.reporter.track("Submitting..."):
                await context.session.wait_for_idle(self.options.idle_time_ms, self.options.idle_timeout_ms)
            logger.debug(f"Finished step {step_name} ({i+1}/{total_steps}) in {time.monotonic() - step_start_time:.3f} seconds.")

        return True

    async def _read_heading(self, context: FlowContext) -> str:
        heading_element = await context.session.query_one("h1")
        if not heading_element:
            return ""
        text = await heading_element.text_content()
        return (text or "").strip()

    async def _raise_on_validation_errors(self, context: FlowContext):
        alerts = await context.session.query_all('*[role="alert"]')
        if not alerts:
            return
        messages = []
        for alert in alerts:
            text = await alert.text_content()
            messages.append((text or "").strip())
        raise ValidationRejection(messages)

    async def _handle_failure(self, context: FlowContext, error: Exception) -> OnboardResult:
        if await has_left_target_site(context):
            logger.warning(f"Step failed after leaving target site, treating flow as finished: {error}")
            await self._release_session_quietly(context.session)
            return OnboardResult(outcome=FlowOutcome.BENIGNLY_TERMINATED, steps=list(self.executed_steps))

        logger.error(f"Onboarding flow failed: {error}", exc_info=self.options.debug_enabled)

        if self.options.debug_enabled:
            try:
                await self._inject_debug_alert(context, error)
            except Exception as inject_err:
                logger.error(f"Could not show debug diagnostics in page: {inject_err}")
            else:
                logger.warning("Debug mode: browser left open for inspection. The caller is responsible for closing it.")
                return OnboardResult(
                    outcome=FlowOutcome.AWAITING_DEBUG_INSPECTION,
                    steps=list(self.executed_steps),
                    session=context.session,
                )

        await self._release_session_quietly(context.session)
        raise error

    async def _inject_debug_alert(self, context: FlowContext, error: Exception):
        try:
            location = await context.session.current_location()
        except Exception:
            location = "unknown"
        message = "\n".join([
            str(error),
            "debug: " + json.dumps(self.options.debug, default=str),
            "values: " + context.values.model_dump_json(),
            "url: " + location,
            BUILD_ID,
        ])
        await context.session.show_alert(message)

    async def _close_session(self, session):
        with self.reporter.track("Closing browser"):
            await session.close()

    async def _release_session_quietly(self, session):
        """Close the session on an exit path that already carries an outcome or error of its own."""
        try:
            await self._close_session(session)
        except Exception as close_err:
            logger.error(f"Could not release browser session: {close_err}")

# ---------------------------
# Entry Point
# ---------------------------

async def onboard(
    options: Union[OnboardOptions, Mapping[str, Any]],
    *,
    flows: Optional[Mapping[str, Sequence[StepTask]]] = None,
    prologue: Optional[Sequence[StepTask]] = None,
    session_factory: Optional[Callable[[OnboardOptions], Awaitable[Any]]] = None,
    reporter: Optional[ProgressReporter] = None,
) -> OnboardResult:
    """
    Drive the onboarding form at options.url to completion.

    Raises ConfigurationError before launching anything when values are
    incomplete, and re-raises step errors when not in debug mode.
    """
    if not isinstance(options, OnboardOptions):
        try:
            options = OnboardOptions.model_validate(options)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid onboarding options: {e}") from e

    values = resolve_onboard_values(options)

    if flows is None:
        from onboard_flows import FLOWS
        flows = FLOWS
    if values.business_type not in flows:
        raise ConfigurationError(f"No flow defined for business type '{values.business_type}'")

    runner = OnboardRunner(
        options,
        values,
        flows[values.business_type],
        prologue=prologue,
        session_factory=session_factory,
        reporter=reporter,
    )
    return await runner.run()
