#Expose the high-level pipeline pieces:
#Candidate filtering (hard rules)
#Search sessions (progressive radius expansion)
#Dispatcher orchestrator (the "one call" entry point)
#Lifecycle service and the auto-finish sweep

from .candidate_filter import build_base_candidates
from .search_session import ProximitySearch, SearchState
from .dispatcher import Dispatcher #the main entry point to dispatch a request to a provider
from .lifecycle import RequestLifecycle
from .auto_finish import AutoFinishSweeper, run_auto_finish_sweep

__all__ = [
    "build_base_candidates",
    "ProximitySearch",
    "SearchState",
    "Dispatcher",
    "RequestLifecycle",
    "AutoFinishSweeper",
    "run_auto_finish_sweep",
]
