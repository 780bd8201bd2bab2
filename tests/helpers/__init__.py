"""Test helpers for the job alerts tests."""

from .fake_clock import FakeClock
from .fake_search import FakeSearchIndex, make_hit, make_result

__all__ = ["FakeClock", "FakeSearchIndex", "make_hit", "make_result"]
