from .entity import Deadline
from .entity import DrainEvent
from .entity import DrainStatus
from .entity import LifecycleOutcome
from .entity import ScopedToken
from .entity import Secret
from .lifecycle import DrainModel
from .lifecycle import Heartbeater
from .lifecycle import LifecycleHandler
