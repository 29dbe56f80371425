"""
Booking Workflow — The per-order state machine and the session that drives it.

Stages:

    RATE_QUOTE ──QUOTE_SELECTED──> BILL_OF_LADING
                                        │
                  BOL_SUBMITTED         │        BOL_SUBMITTED
                  [schedule_pickup]     │        [not schedule_pickup]
            ┌───────────────────────────┴──────────────┐
            v                                          v
    RESPONSE_SUMMARY <──PICKUP_SUBMITTED── PICKUP_REQUEST
            │
            └──FINAL_SUBMITTED──> finished (cache entry removed, order deleted)

    BACK from BILL_OF_LADING or PICKUP_REQUEST returns to the stage visited
    before it. Context captured on the way (selected quote, BOL response,
    pickup response) is kept, never recomputed.

WorkflowStateMachine is pure: an explicit transition table with guard
predicates, no I/O. BookingWorkflow wires it to the collaborators:

    workflow = BookingWorkflow(order, "xpo", cache, bus, backend, saver)
    with workflow:
        workflow.request_rate_quote(quote_payload)
        workflow.select_quote(quote)
        workflow.submit_bill_of_lading(bol_payload, schedule_pickup=True)
        workflow.final_submit()

Each step returns a StepResult. A failed step leaves the stage unchanged and
carries one readable message; the operator re-triggers it explicitly.
"""

from collections import namedtuple
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .backend_client import find_pdf_uri
from .errors import BookingError, InvalidTransition, user_message
from .field_extractor import NOT_FOUND, get_value
from .models import BolData, Order, PickupData, RateQuoteData, normalize_carrier


class Stage(Enum):
    RATE_QUOTE = "rate_quote"
    BILL_OF_LADING = "bill_of_lading"
    PICKUP_REQUEST = "pickup_request"
    RESPONSE_SUMMARY = "response_summary"


class Event(Enum):
    QUOTE_SELECTED = "quote_selected"
    BOL_SUBMITTED = "bol_submitted"
    PICKUP_SUBMITTED = "pickup_submitted"
    BACK = "back"
    FINAL_SUBMITTED = "final_submitted"


TERMINAL_STAGE = Stage.RESPONSE_SUMMARY

# target None means the workflow is finished
Transition = namedtuple("Transition", ["source", "event", "guard", "target"])


def _always(context: Dict[str, Any], data: Dict[str, Any]) -> bool:
    return True


def _schedules_pickup(context: Dict[str, Any], data: Dict[str, Any]) -> bool:
    return bool(data.get("schedule_pickup"))


def _needs_pickup(context: Dict[str, Any], data: Dict[str, Any]) -> bool:
    return not data.get("schedule_pickup")


TRANSITIONS = [
    Transition(Stage.RATE_QUOTE, Event.QUOTE_SELECTED, _always, Stage.BILL_OF_LADING),
    Transition(Stage.BILL_OF_LADING, Event.BOL_SUBMITTED, _schedules_pickup, Stage.RESPONSE_SUMMARY),
    Transition(Stage.BILL_OF_LADING, Event.BOL_SUBMITTED, _needs_pickup, Stage.PICKUP_REQUEST),
    Transition(Stage.PICKUP_REQUEST, Event.PICKUP_SUBMITTED, _always, Stage.RESPONSE_SUMMARY),
    Transition(Stage.BILL_OF_LADING, Event.BACK, _always, Stage.RATE_QUOTE),
    Transition(Stage.PICKUP_REQUEST, Event.BACK, _always, Stage.BILL_OF_LADING),
    Transition(Stage.RESPONSE_SUMMARY, Event.FINAL_SUBMITTED, _always, None),
]

# Context key each forward event records
CONTEXT_KEYS = {
    Event.QUOTE_SELECTED: ("selected_quote",),
    Event.BOL_SUBMITTED: ("bol_response", "schedule_pickup"),
    Event.PICKUP_SUBMITTED: ("pickup_response",),
}


class WorkflowStateMachine:
    """Table-driven stage machine for one order.

    Attributes:
        stage: Current stage.
        context: Data captured by forward transitions.
        completed_stages: Stages left by a forward transition, in order. Never gates anything.
        finished: True after FINAL_SUBMITTED.
    """

    def __init__(self, transitions: Optional[List[Transition]] = None):
        self._transitions = list(transitions or TRANSITIONS)
        self.stage = Stage.RATE_QUOTE
        self.context: Dict[str, Any] = {}
        self.completed_stages: List[Stage] = []
        self.finished = False
        self._history: List[Stage] = []

    def transitions(self) -> List[Transition]:
        return list(self._transitions)

    def available_events(self) -> List[Event]:
        if self.finished:
            return []
        events = []
        for transition in self._transitions:
            if transition.source != self.stage or transition.event in events:
                continue
            if transition.event == Event.BACK and not self._history:
                continue
            events.append(transition.event)
        return events

    def can_fire(self, event: Event, **data) -> bool:
        return self._match(event, data) is not None

    def _match(self, event: Event, data: Dict[str, Any]) -> Optional[Transition]:
        if self.finished:
            return None
        if event == Event.BACK and not self._history:
            return None
        for transition in self._transitions:
            if transition.source == self.stage and transition.event == event:
                if transition.guard(self.context, data):
                    return transition
        return None

    def fire(self, event: Event, **data) -> Optional[Stage]:
        """Apply event and return the new stage (None once finished).

        Raises:
            InvalidTransition: If no transition for event is allowed from the current stage.
        """
        transition = self._match(event, data)
        if transition is None:
            where = "finished workflow" if self.finished else self.stage.value
            raise InvalidTransition(f"Cannot {event.value.replace('_', ' ')} from {where}")

        if event == Event.BACK:
            self.stage = self._history.pop()
            return self.stage

        for key in CONTEXT_KEYS.get(event, ()):
            if key in data:
                self.context[key] = data[key]

        if self.stage not in self.completed_stages:
            self.completed_stages.append(self.stage)

        if transition.target is None:
            self.finished = True
            self._history = []
            return None

        self._history.append(self.stage)
        self.stage = transition.target
        return self.stage

    def back(self) -> Stage:
        return self.fire(Event.BACK)

    def revisit(self, stage: Stage) -> Stage:
        """Jump to a completed, non-terminal stage. Context is left as is."""
        if self.finished:
            raise InvalidTransition("Cannot revisit stages of a finished workflow")
        if stage == TERMINAL_STAGE or stage not in self.completed_stages:
            raise InvalidTransition(f"Stage {stage.value} has not been completed")
        if stage != self.stage:
            self._history.append(self.stage)
            self.stage = stage
        return self.stage


@dataclass
class StepResult:
    ok: bool
    stage: Optional[Stage]
    message: str = ""
    data: Any = None


def initial_staging(order: Order) -> Dict[str, Any]:
    """Fields a StagedShipment is created with on first interaction."""
    sku = get_value(order.attributes, "SKU")
    return {
        "sku": "" if sku == NOT_FOUND else sku,
        "marketplace": order.marketplace_order_id,
        "orders_jsonb": order.attributes,
    }


class BookingWorkflow:
    """One order's booking session.

    Carrier results are published on the event bus; while the session is
    open, its own subscribers write them into the staging cache.

    Attributes:
        order: The Order being booked.
        carrier: Carrier key ("xpo" / "estes").
        machine: The WorkflowStateMachine.
    """

    def __init__(self, order: Order, carrier: str, cache, bus, backend, saver, debug: bool = False):
        self.order = order
        self.carrier = normalize_carrier(carrier)
        self.cache = cache
        self.bus = bus
        self.backend = backend
        self.saver = saver
        self.debug = debug
        self.machine = WorkflowStateMachine()
        self._subscriptions = []
        self._close_callbacks: List[Callable[[], None]] = []
        self.is_open = False

    @property
    def order_id(self) -> int:
        return self.order.id

    @property
    def stage(self) -> Stage:
        return self.machine.stage

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "BookingWorkflow":
        if self.is_open:
            return self
        self._subscriptions = [
            self.bus.subscribe(RateQuoteData, self._store_rate_quote),
            self.bus.subscribe(BolData, self._store_bol),
            self.bus.subscribe(PickupData, self._store_pickup),
        ]
        if self.cache.get(self.order_id) is None:
            self.cache.upsert(self.order_id, initial_staging(self.order))
        self.is_open = True
        if self.debug:
            print(f"  Opened {self.carrier.upper()} booking for order {self.order_id}")
        return self

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def close(self) -> None:
        """Unsubscribe from the bus and run close callbacks (e.g., stop poll loops)."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()
        self.is_open = False

    def __enter__(self) -> "BookingWorkflow":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Bus subscribers
    # ------------------------------------------------------------------

    def _store_rate_quote(self, message: RateQuoteData) -> None:
        if message.order_id != self.order_id:
            return
        fields = {"rate_quote_request": message.request}
        if message.response is not None:
            fields["rate_quote_response"] = message.response
        self.cache.upsert(self.order_id, {"carrier_artifacts": {message.carrier: fields}})

    def _store_bol(self, message: BolData) -> None:
        if message.order_id != self.order_id:
            return
        fields = {"bol_response": message.bol_response}
        if message.bol_file_refs is not None:
            fields["bol_file_refs"] = message.bol_file_refs
        self.cache.upsert(self.order_id, {"carrier_artifacts": {message.carrier: fields}})

    def _store_pickup(self, message: PickupData) -> None:
        if message.order_id != self.order_id:
            return
        self.cache.upsert(self.order_id, {"pickup_artifact": message.pickup_response})

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _failed(self, error: BaseException) -> StepResult:
        message = user_message(error)
        if self.debug:
            print(f"  Order {self.order_id} stays at {self.stage.value}: {message}")
        return StepResult(False, self.stage, message)

    def request_rate_quote(self, payload: Dict[str, Any]) -> StepResult:
        """Ask the carrier for quotes. Does not change the stage."""
        try:
            response = self.backend.create_rate_quote(self.carrier, payload)
        except BookingError as e:
            return self._failed(e)
        self.bus.publish(RateQuoteData(self.order_id, self.carrier, payload, response))
        return StepResult(True, self.stage, "Rate quote received", response)

    def select_quote(self, quote: Dict[str, Any]) -> StepResult:
        try:
            stage = self.machine.fire(Event.QUOTE_SELECTED, selected_quote=quote)
        except InvalidTransition as e:
            return self._failed(e)
        return StepResult(True, stage, "Quote selected", quote)

    def submit_bill_of_lading(
        self,
        payload: Dict[str, Any],
        schedule_pickup: bool = False,
        pickup_payload: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        """Create the bill of lading and advance.

        With schedule_pickup the pickup is booked as part of the BOL call and
        the PICKUP_REQUEST stage is skipped. A BOL PDF that cannot be
        downloaded does not fail the step.
        """
        if not self.machine.can_fire(Event.BOL_SUBMITTED, schedule_pickup=schedule_pickup):
            return self._failed(InvalidTransition(f"Cannot submit a bill of lading from {self.stage.value}"))

        body = dict(payload)
        if schedule_pickup:
            body["schedulePickup"] = True
            if pickup_payload:
                body["pickupRequest"] = pickup_payload

        try:
            response = self.backend.create_bill_of_lading(self.carrier, body)
        except BookingError as e:
            return self._failed(e)

        files = None
        pdf_uri = find_pdf_uri(response)
        if pdf_uri:
            try:
                bol_file = self.backend.download_bol_pdf(self.carrier, pdf_uri)
            except BookingError as e:
                print(f"  Warning: BOL PDF for order {self.order_id} could not be downloaded: {e.message}")
                bol_file = None
            if bol_file is not None:
                files = [bol_file]

        self.bus.publish(BolData(self.order_id, self.carrier, response, files))
        stage = self.machine.fire(Event.BOL_SUBMITTED, bol_response=response, schedule_pickup=schedule_pickup)
        return StepResult(True, stage, "Bill of lading created", response)

    def submit_pickup(self, payload: Dict[str, Any]) -> StepResult:
        if not self.machine.can_fire(Event.PICKUP_SUBMITTED):
            return self._failed(InvalidTransition(f"Cannot request a pickup from {self.stage.value}"))

        try:
            response = self.backend.create_pickup_request(self.carrier, payload)
        except BookingError as e:
            return self._failed(e)

        self.bus.publish(PickupData(self.order_id, {"request": payload, "response": response}))
        stage = self.machine.fire(Event.PICKUP_SUBMITTED, pickup_response=response)
        return StepResult(True, stage, "Pickup requested", response)

    def back(self) -> StepResult:
        try:
            stage = self.machine.back()
        except InvalidTransition as e:
            return self._failed(e)
        return StepResult(True, stage)

    def revisit(self, stage: Stage) -> StepResult:
        try:
            current = self.machine.revisit(stage)
        except InvalidTransition as e:
            return self._failed(e)
        return StepResult(True, current)

    def final_submit(self) -> StepResult:
        """Save the shipment to the backend, then tear the order down.

        Teardown removes the staged shipment and deletes the marketplace
        order. A failed delete is reported as a warning only; the booking
        itself is complete.
        """
        if not self.machine.can_fire(Event.FINAL_SUBMITTED):
            return self._failed(InvalidTransition(f"Cannot submit from {self.stage.value}"))

        try:
            outcome = self.saver.save(self.order_id, include_artifacts=True)
        except BookingError as e:
            return self._failed(e)

        self.machine.fire(Event.FINAL_SUBMITTED)
        self.cache.remove(self.order_id)

        message = f"Order {self.order_id} submitted ({outcome.verdict.value})"
        try:
            self.backend.delete_order(self.order_id)
        except BookingError as e:
            message += f". Warning: the order could not be deleted: {e.message}"
            print(f"  Warning: order {self.order_id} was not deleted: {e.message}")

        return StepResult(True, None, message, outcome)
