class SegmentationError(Exception):
    """Base class for all errors raised by spotseg."""


class InvalidSchema(SegmentationError, ValueError):
    """Required point fields are missing or malformed."""


class AssignmentOutOfRange(SegmentationError, ValueError):
    """Assignment refers to a negative id or past the component list."""


class DegenerateGeometry(SegmentationError, ValueError):
    """Triangulation cannot proceed on the given points."""


class InconsistentPartitions(SegmentationError, ValueError):
    """Partitions disagree on parameters that merging requires to be shared."""


class InvalidComponentReference(SegmentationError, RuntimeError):
    """Internal invariant violation between the assignment and the component list."""
