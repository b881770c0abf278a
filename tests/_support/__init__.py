"""
Test support for dbplane: in-memory collaborators and an engine harness.

    from tests._support.fakes import FakeFleet
    from tests._support.harness import Harness
"""
