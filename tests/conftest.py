"""Shared pytest fixtures for infra-orchestrator tests."""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import RetryPolicy
from errors import ProviderError
from orchestrator.state import StateStore


class FakeProvider:
    """In-memory provider that records calls and can inject failures.

    Objects get sequential ids '<type>-<n>'. Failures are registered per
    (method, resource_type) and raised `times` times (None = always).
    """

    def __init__(self, delay: float = 0.0):
        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._failures: dict[tuple[str, str], list] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def fail(self, method, resource_type, error=None, times=None):
        """Make `method` fail for `resource_type`."""
        error = error or ProviderError(f"{method} {resource_type} failed")
        self._failures[(method, resource_type)] = [error, times]

    def _enter(self, method, resource_type, label):
        with self._lock:
            self.calls.append((method, resource_type, label))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                failure = self._failures.get((method, resource_type))
                if failure is not None and failure[1] != 0:
                    if failure[1] is not None:
                        failure[1] -= 1
                    raise failure[0]
        finally:
            with self._lock:
                self.active -= 1

    def create(self, resource_type, attributes):
        self._enter('create', resource_type, attributes.get('name', ''))
        with self._lock:
            self._counter += 1
            object_id = f'{resource_type}-{self._counter}'
            outputs = {**attributes, 'id': object_id}
            self.objects[object_id] = dict(outputs)
        return outputs

    def read(self, resource_type, outputs):
        self._enter('read', resource_type, outputs.get('id', ''))
        obj = self.objects.get(outputs.get('id'))
        return dict(obj) if obj is not None else None

    def update(self, resource_type, outputs, attributes):
        self._enter('update', resource_type, outputs.get('id', ''))
        object_id = outputs['id']
        if object_id not in self.objects:
            raise ProviderError(f"{object_id} does not exist", status=404)
        new_outputs = {**attributes, 'id': object_id}
        self.objects[object_id] = dict(new_outputs)
        return new_outputs

    def delete(self, resource_type, outputs):
        self._enter('delete', resource_type, outputs.get('id', ''))
        self.objects.pop(outputs.get('id'), None)


@pytest.fixture
def provider():
    """Recording in-memory provider."""
    return FakeProvider()


@pytest.fixture
def store(tmp_path):
    """State store rooted in a temporary directory."""
    return StateStore(tmp_path / 'state' / 'state.json')


@pytest.fixture
def fast_retry():
    """Retry policy without delays."""
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def stack_dir(tmp_path):
    """Working directory with orchestrator.yaml and a three-resource manifest.

    Layout:
    - orchestrator.yaml (state and local provider under tmp_path)
    - stack.yaml: vpc.main <- subnet.app <- instance.web
    """
    (tmp_path / 'orchestrator.yaml').write_text("""
state_path: state/state.json
max_workers: 2
retry:
  attempts: 2
  base_delay: 0
  max_delay: 0
provider:
  name: local
  path: cloud
""")
    (tmp_path / 'stack.yaml').write_text("""
schema_version: 1
name: demo
variables:
  size: small
resources:
  - type: vpc
    name: main
    attributes:
      cidr: 10.0.0.0/16
  - type: subnet
    name: app
    attributes:
      vpc_id: ${vpc.main.id}
      cidr: 10.0.1.0/24
  - type: instance
    name: web
    attributes:
      subnet_id: ${subnet.app.id}
      size: ${var.size}
""")
    return tmp_path
