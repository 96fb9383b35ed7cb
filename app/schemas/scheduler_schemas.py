from enum import Enum
from pydantic import Field

from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class SchedulerAction(str, Enum):
    INITIALIZE = "initialize"
    START = "start"
    STOP = "stop"
    TRIGGER_DEADLINE_CHECKS = "trigger-deadline-checks"
    TRIGGER_NOTIFICATIONS = "trigger-notifications"


class SchedulerActionRequest(BaseModel):
    # Plain string so an unknown action is a 400 from the route, not a 422
    action: str = Field(..., description="One of the SchedulerAction values")
