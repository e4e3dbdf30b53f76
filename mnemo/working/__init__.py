from mnemo.working.consolidation import ConsolidationManager, ConsolidationReport
from mnemo.working.memory import EvictionStrategy, WorkingMemory

__all__ = ["ConsolidationManager", "ConsolidationReport", "EvictionStrategy", "WorkingMemory"]
