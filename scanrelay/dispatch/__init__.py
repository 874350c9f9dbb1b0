"""Delivery Job Dispatcher package."""

from scanrelay.dispatch.dispatcher import Dispatcher
from scanrelay.dispatch.models import DeliveryJob, DeliveryMode, DispatchAck, DispatchStatus

__all__ = [
    "DeliveryJob",
    "DeliveryMode",
    "DispatchAck",
    "DispatchStatus",
    "Dispatcher",
]
