__version__ = "0.1.0"

from .errors import (
    SegmentationError,
    InvalidSchema,
    AssignmentOutOfRange,
    DegenerateGeometry,
    InconsistentPartitions,
    InvalidComponentReference,
)
from .distributions import Normal2D, CategoricalSmoothed
from .component import Component, CenterPrior, default_sampler, components_from_assignment
from .triangulation import adjacency_list, adjacency_weights, connected_components
from .bmm_data import SegmentationState, UpdatePriors, merge_states
from .bmm_algorithm import EngineStatus, run_bmm, sweep
from .pipeline import segment_molecules, segment_partitions, run_pipeline
