"""
Errors raised by the bundle adjuster

Numerical trouble inside a solve (singular reduced system, degenerate point
block) is never raised; it is absorbed by rejecting the step.
"""


class BundleError(Exception):
    """Base class for bundle adjustment errors"""


class InvalidReferenceError(BundleError, IndexError):
    """A measurement refers to a camera or point that does not exist"""


class DuplicateMeasurementError(BundleError, ValueError):
    """A (camera, point) pair was measured twice"""


class GraphLockedError(BundleError, RuntimeError):
    """Topology was modified after solving started"""


class SolveInProgressError(BundleError, RuntimeError):
    """compute() was re-entered while a solve was running"""


class PreconditionError(BundleError, ValueError):
    """The problem cannot be solved as built (e.g. an unobserved free camera)"""
