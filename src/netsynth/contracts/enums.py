"""Status codes, kinds, and modes shared across subsystem boundaries.

Uses (str, Enum) wherever a value ends up in a diagnostics dump or a
settings file, so the serialized form is the plain string.
"""

from enum import Enum


class SetupState(str, Enum):
    """Setup state of a component node.

    Transitions:
        NOT_SETUP --start--> SETTING_UP --success--> SETUP
        SETTING_UP --failure--> SETUP_FAILED (terminal until reset)
    """

    NOT_SETUP = "not_setup"
    SETTING_UP = "setting_up"
    SETUP = "setup"
    SETUP_FAILED = "setup_failed"


class ModelComparison(str, Enum):
    """Result of comparing two sets of models."""

    EQUAL = "equal"
    STRICTLY_SPECIALIZES = "strictly_specializes"
    UNRELATED = "unrelated"


class PortDirection(str, Enum):
    """Direction of a component port."""

    INPUT = "input"
    OUTPUT = "output"


class BufferKind(str, Enum):
    """Kind of connection between two ports."""

    DATA = "data"
    BUFFER = "buffer"


class ProcessState(str, Enum):
    """Lifecycle of a deployment process as seen by the reconciler."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHING = "finishing"
    FINISHED = "finished"


class ProcessClass(str, Enum):
    """Classification of a live process during reconciliation."""

    NEEDED = "needed"
    SUPERSEDED = "superseded"
    FINISHING = "finishing"


class OnError(str, Enum):
    """What the engine does with its transaction when resolution fails.

    Values:
        DISCARD: Drop the transaction (default)
        COMMIT: Commit the partial transaction anyway (diagnostic mode)
        SAVE: Dump dataflow and hierarchy views, then discard
    """

    DISCARD = "discard"
    COMMIT = "commit"
    SAVE = "save"


class GraphEventKind(str, Enum):
    """Kind of mutation emitted by the component graph."""

    NODE_ADDED = "node_added"
    NODE_REMOVED = "node_removed"
    DEPENDENCY_CHANGED = "dependency_changed"
    DATAFLOW_CHANGED = "dataflow_changed"
    COMMITTED = "committed"
