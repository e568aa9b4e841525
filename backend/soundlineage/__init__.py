"""
Sound Lineage
=============
Derivation engine for the studio: produces families of related sounds from an
existing one and records their ancestry as a tree.

Modules:
- database.py: lineage graph store (in-memory and SQLite backends)
- strategies.py: parameter_shift, evolve, mutate, combine and style_transfer policies
- graph.py: bounded ancestor/descendant walks, tree building and lineage statistics
- orchestrator.py: batch derivation with per-item failure isolation
- transformations.py: tempo correction for generated audio
- errors.py: error taxonomy
"""

__version__ = "1.0.0"

from .database import LineageDB, LineageStore
from .orchestrator import DerivationOrchestrator
from .transformations import TempoCorrection, correct_audio_bpm
