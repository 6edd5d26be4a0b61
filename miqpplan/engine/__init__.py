from miqpplan.engine.base import DiscreteEngine, INVALID_HANDLE
from miqpplan.engine.reference import ReferencePath, generate_reference_records
from miqpplan.engine.milp_engine import MilpEngine
