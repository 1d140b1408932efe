"""Awards night voting core: single-unlock coordination and duplicate-vote prevention."""

__version__ = '1.0.0'
