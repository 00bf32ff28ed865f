"""Tests for orchestrator.graph module."""

import random
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import CycleError, ValidationError
from manifest import Manifest, Resource
from orchestrator.graph import ResourceGraph, topological_sort


def _make_manifest(resources):
    """Build a manifest without load-time validation (allows cycles)."""
    return Manifest(name='test', resources=resources)


def _ref(resource_id):
    return '${' + resource_id + '.id}'


def _network_manifest():
    """vpc.main <- subnet.a, subnet.b <- instance.web (depends on both subnets)."""
    return _make_manifest([
        Resource('vpc', 'main'),
        Resource('subnet', 'a', {'vpc_id': _ref('vpc.main')}),
        Resource('subnet', 'b', {'vpc_id': _ref('vpc.main')}),
        Resource('instance', 'web', {'subnets': [_ref('subnet.a'), _ref('subnet.b')]}),
    ])


def _random_dag(rng, size):
    """Random acyclic dependency map: nodes only depend on earlier nodes."""
    ids = [f'n{i}' for i in range(size)]
    deps = {}
    for i, node_id in enumerate(ids):
        deps[node_id] = {ids[j] for j in range(i) if rng.random() < 0.3}
    shuffled = ids[:]
    rng.shuffle(shuffled)
    return {node_id: deps[node_id] for node_id in shuffled}


class TestTopologicalSort:
    """Tests for topological_sort()."""

    def test_linear(self):
        assert topological_sort({'c': {'b'}, 'b': {'a'}, 'a': set()}) == ['a', 'b', 'c']

    def test_ties_follow_given_order(self):
        deps = {'x': set(), 'y': set(), 'z': {'x'}}
        assert topological_sort(deps, order=['y', 'x', 'z']) == ['y', 'x', 'z']
        assert topological_sort(deps, order=['x', 'y', 'z']) == ['x', 'y', 'z']

    def test_released_nodes_keep_declaration_order(self):
        deps = {'root': set(), 'b': {'root'}, 'a': {'root'}, 'other': set()}
        assert topological_sort(deps) == ['root', 'b', 'a', 'other']

    def test_unknown_dependency(self):
        with pytest.raises(ValidationError, match="unknown 'ghost'"):
            topological_sort({'a': {'ghost'}})

    def test_cycle(self):
        with pytest.raises(CycleError) as exc_info:
            topological_sort({'a': {'b'}, 'b': {'c'}, 'c': {'a'}, 'd': set()})
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {'a', 'b', 'c'}
        assert 'Dependency cycle detected' in str(exc_info.value)

    def test_self_loop(self):
        with pytest.raises(CycleError) as exc_info:
            topological_sort({'a': {'a'}})
        assert exc_info.value.cycle == ['a', 'a']

    def test_cycle_error_is_validation_error(self):
        with pytest.raises(ValidationError):
            topological_sort({'a': {'b'}, 'b': {'a'}})

    @pytest.mark.parametrize('seed', range(25))
    def test_random_dag_order_respects_dependencies(self, seed):
        rng = random.Random(seed)
        deps = _random_dag(rng, rng.randint(1, 15))
        order = topological_sort(deps)
        assert sorted(order) == sorted(deps)
        position = {node_id: i for i, node_id in enumerate(order)}
        for node_id, node_deps in deps.items():
            for dep in node_deps:
                assert position[dep] < position[node_id]

    @pytest.mark.parametrize('seed', range(25))
    def test_random_graph_with_cycle_always_raises(self, seed):
        rng = random.Random(seed)
        deps = _random_dag(rng, rng.randint(2, 15))
        ids = sorted(deps)
        ring = rng.sample(ids, rng.randint(1, len(ids)))
        for i, node_id in enumerate(ring):
            deps[node_id] = deps[node_id] | {ring[(i + 1) % len(ring)]}
        with pytest.raises(CycleError) as exc_info:
            topological_sort(deps)
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        for node_id, dep in zip(cycle, cycle[1:]):
            assert dep in deps[node_id]


class TestResourceGraph:
    """Tests for ResourceGraph."""

    def test_nodes_and_edges(self):
        graph = ResourceGraph(_network_manifest())
        assert len(graph) == 4
        assert 'subnet.a' in graph
        assert 'subnet.c' not in graph
        nodes = {n.id: n for n in graph.create_order()}
        web = nodes['instance.web']
        assert [d.id for d in web.dependencies] == ['subnet.a', 'subnet.b']
        assert web.dependents == []
        vpc = nodes['vpc.main']
        assert vpc.dependencies == []
        assert [d.id for d in vpc.dependents] == ['subnet.a', 'subnet.b']

    def test_create_order(self):
        graph = ResourceGraph(_network_manifest())
        assert [n.id for n in graph.create_order()] == ['vpc.main', 'subnet.a', 'subnet.b', 'instance.web']

    def test_dependencies_declared_later_come_first(self):
        manifest = _make_manifest([
            Resource('instance', 'web', {'vpc_id': _ref('vpc.main')}),
            Resource('vpc', 'main'),
        ])
        graph = ResourceGraph(manifest)
        assert [n.id for n in graph.create_order()] == ['vpc.main', 'instance.web']

    def test_explicit_depends_on(self):
        manifest = _make_manifest([
            Resource('dns', 'record', depends_on=['lb.main']),
            Resource('lb', 'main'),
        ])
        graph = ResourceGraph(manifest)
        assert [n.id for n in graph.create_order()] == ['lb.main', 'dns.record']

    def test_transitive_queries(self):
        graph = ResourceGraph(_network_manifest())
        assert graph.dependencies_of('instance.web') == {'subnet.a', 'subnet.b', 'vpc.main'}
        assert graph.dependencies_of('vpc.main') == set()
        assert graph.dependencies_of('subnet.b') == {'vpc.main'}

    def test_cycle_raises(self):
        manifest = _make_manifest([
            Resource('a', 'x', {'ref': _ref('b.y')}),
            Resource('b', 'y', depends_on=['a.x']),
        ])
        with pytest.raises(CycleError) as exc_info:
            ResourceGraph(manifest)
        assert exc_info.value.cycle == ['a.x', 'b.y', 'a.x']

    def test_self_reference_raises(self):
        manifest = Manifest.from_dict({
            'name': 'test',
            'resources': [{'type': 'sg', 'name': 'web', 'attributes': {'peer': '${sg.web.id}'}}],
        })
        with pytest.raises(CycleError):
            ResourceGraph(manifest)

    def test_unknown_dependency(self):
        manifest = _make_manifest([Resource('a', 'x', depends_on=['b.missing'])])
        with pytest.raises(ValidationError, match="unknown resource 'b.missing'"):
            ResourceGraph(manifest)

    def test_duplicate_resource(self):
        manifest = _make_manifest([Resource('a', 'x'), Resource('a', 'x')])
        with pytest.raises(ValidationError, match='Duplicate'):
            ResourceGraph(manifest)

    def test_empty(self):
        graph = ResourceGraph(_make_manifest([]))
        assert graph.create_order() == []
        assert len(graph) == 0
