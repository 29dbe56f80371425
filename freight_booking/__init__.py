"""
Freight booking stager — Stages marketplace orders through LTL carrier booking.

Each module handles one concern:

  orchestrator.py     Session wiring, bulk save, import pipeline
  workflow.py         Stage machine and the per-order booking session
  staging_cache.py    Durable + in-memory staged shipments
  save_decision.py    Create / update / skip verdicts
  shipment_saver.py   Applies the verdict against the backend
  event_bus.py        Carrier result pub/sub
  job_poller.py       Import / scrape job polling and chaining
  backend_client.py   Order-processing backend HTTP client
  job_client.py       Job service HTTP client
  field_extractor.py  Fuzzy access to order attributes
  stores.py           Key-value stores behind the cache
  models.py           Data types
  errors.py           Failure taxonomy
"""

__version__ = "0.1.0"

from .orchestrator import StagingOrchestrator
from .workflow import BookingWorkflow, Event, Stage, WorkflowStateMachine
from .staging_cache import OrderStagingCache
from .save_decision import Verdict, decide
from .shipment_saver import ShipmentSaver
from .event_bus import EventBus
from .job_poller import JobPoller
from .backend_client import BackendClient
from .job_client import JobClient
from .field_extractor import get_value
