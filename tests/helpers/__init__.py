"""Test helper utilities for mail queue tests."""

from .fakes import FakeClock, FakePreferenceGate, FakeTransport, make_env_config

__all__ = ["FakeClock", "FakePreferenceGate", "FakeTransport", "make_env_config"]
