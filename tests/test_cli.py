"""Tests for CLI verb handlers and the top-level dispatcher."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
from orchestrator.cli import (
    apply_main,
    destroy_main,
    force_unlock_main,
    plan_main,
    show_main,
    state_main,
    validate_main,
)
from orchestrator.state import StateStore


def _args(stack_dir, *args):
    return list(args) + ['--config', str(stack_dir / 'orchestrator.yaml')]


def _manifest(stack_dir):
    return str(stack_dir / 'stack.yaml')


def _state(stack_dir):
    return StateStore(stack_dir / 'state' / 'state.json').load()


class TestValidate:
    """Tests for 'validate' verb."""

    def test_valid(self, stack_dir, capsys):
        rc = validate_main(['-f', _manifest(stack_dir)])
        assert rc == 0
        assert "Manifest 'demo' is valid (3 resources)" in capsys.readouterr().out

    def test_cycle(self, tmp_path, capsys):
        path = tmp_path / 'cycle.yaml'
        path.write_text("""
name: cycle
resources:
  - type: a
    name: x
    depends_on: [b.y]
  - type: b
    name: y
    attributes:
      ref: ${a.x.id}
""")
        rc = validate_main(['-f', str(path)])
        assert rc == 1
        assert 'Dependency cycle detected' in capsys.readouterr().err

    def test_json_output(self, stack_dir, capsys):
        rc = validate_main(['-f', _manifest(stack_dir), '--json-output'])
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['valid'] is True
        assert data['resources'] == ['vpc.main', 'subnet.app', 'instance.web']
        assert data['manifest']['name'] == 'demo'
        assert data['manifest']['variables'] == {'size': 'small'}

    def test_missing_manifest_argument(self, capsys):
        assert validate_main([]) == 1
        assert '-f/--file' in capsys.readouterr().err


class TestPlanApply:
    """End-to-end plan/apply with the local provider."""

    def test_plan_exit_codes(self, stack_dir, capsys):
        plan_file = stack_dir / 'plan.json'
        rc = plan_main(_args(stack_dir, '-f', _manifest(stack_dir), '-o', str(plan_file)))
        assert rc == 2
        out = capsys.readouterr().out
        assert 'Plan: 3 to create, 0 to update, 0 to destroy.' in out
        assert plan_file.exists()

        rc = apply_main(_args(stack_dir, str(plan_file)))
        assert rc == 0
        assert 'Apply complete!' in capsys.readouterr().out
        assert _state(stack_dir).ids() == ['instance.web', 'subnet.app', 'vpc.main']

        rc = plan_main(_args(stack_dir, '-f', _manifest(stack_dir)))
        assert rc == 0
        assert 'No changes.' in capsys.readouterr().out

    def test_plan_with_var_override(self, stack_dir, capsys):
        apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--yes'))
        capsys.readouterr()
        rc = plan_main(_args(stack_dir, '-f', _manifest(stack_dir), '--var', 'size=large'))
        assert rc == 2
        out = capsys.readouterr().out
        assert '~ instance.web (update)' in out
        assert 'size: "small" -> "large"' in out

    def test_plan_json_output(self, stack_dir, capsys):
        rc = plan_main(_args(stack_dir, '-f', _manifest(stack_dir), '--json-output'))
        assert rc == 2
        data = json.loads(capsys.readouterr().out)
        assert [op['resource_id'] for op in data['operations']] == ['vpc.main', 'subnet.app', 'instance.web']

    def test_plan_invalid_manifest(self, stack_dir, capsys):
        bad = stack_dir / 'bad.yaml'
        bad.write_text("name: bad\nresources:\n  - type: vpc\n")
        rc = plan_main(_args(stack_dir, '-f', str(bad)))
        assert rc == 1
        assert 'missing required field: name' in capsys.readouterr().err

    def test_plan_bad_config(self, stack_dir, capsys):
        rc = plan_main(['-f', _manifest(stack_dir), '--config', str(stack_dir / 'nope.yaml')])
        assert rc == 1
        assert 'Config file not found' in capsys.readouterr().err

    def test_stale_plan_rejected(self, stack_dir, capsys):
        plan_file = stack_dir / 'plan.json'
        plan_main(_args(stack_dir, '-f', _manifest(stack_dir), '-o', str(plan_file)))
        assert apply_main(_args(stack_dir, str(plan_file))) == 0
        capsys.readouterr()
        assert apply_main(_args(stack_dir, str(plan_file))) == 1
        assert 'Re-run plan' in capsys.readouterr().err

    def test_apply_missing_plan_file(self, stack_dir, capsys):
        assert apply_main(_args(stack_dir, str(stack_dir / 'missing.json'))) == 1
        assert 'Plan file not found' in capsys.readouterr().err

    def test_apply_requires_input(self, stack_dir, capsys):
        assert apply_main(_args(stack_dir)) == 1
        assert 'specify a plan file' in capsys.readouterr().err

    def test_apply_manifest_declined(self, stack_dir, capsys):
        with patch('builtins.input', return_value='n'):
            rc = apply_main(_args(stack_dir, '-f', _manifest(stack_dir)))
        assert rc == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert _state(stack_dir).ids() == []

    def test_apply_confirm_with_closed_stdin(self, stack_dir, capsys):
        with patch('builtins.input', side_effect=EOFError):
            rc = apply_main(_args(stack_dir, '-f', _manifest(stack_dir)))
        assert rc == 1
        assert 'Aborted.' in capsys.readouterr().out
        assert _state(stack_dir).ids() == []

    def test_apply_no_changes_json_output(self, stack_dir, capsys):
        apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--yes'))
        capsys.readouterr()
        rc = apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--json-output'))
        assert rc == 0
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'apply'
        assert data['success'] is True
        assert data['operations'] == []

    def test_apply_manifest_confirmed(self, stack_dir, capsys):
        with patch('builtins.input', return_value='y'):
            rc = apply_main(_args(stack_dir, '-f', _manifest(stack_dir)))
        assert rc == 0
        assert len(_state(stack_dir)) == 3

    def test_apply_writes_report(self, stack_dir, capsys):
        report_dir = stack_dir / 'reports'
        rc = apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--yes', '--report-dir', str(report_dir)))
        assert rc == 0
        assert sorted(p.suffix for p in report_dir.iterdir()) == ['.json', '.md']

    def test_apply_locked(self, stack_dir, capsys):
        plan_file = stack_dir / 'plan.json'
        plan_main(_args(stack_dir, '-f', _manifest(stack_dir), '-o', str(plan_file)))
        StateStore(stack_dir / 'state' / 'state.json').acquire_lock('apply')
        capsys.readouterr()
        assert apply_main(_args(stack_dir, str(plan_file))) == 1
        assert 'State is locked' in capsys.readouterr().err


class TestDestroy:
    """Tests for 'destroy' verb."""

    def test_destroy(self, stack_dir, capsys):
        apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--yes'))
        capsys.readouterr()
        rc = destroy_main(_args(stack_dir, '--yes'))
        assert rc == 0
        assert 'Destroy complete!' in capsys.readouterr().out
        assert _state(stack_dir).ids() == []
        assert list((stack_dir / 'cloud').glob('*/*.json')) == []

    def test_destroy_nothing(self, stack_dir, capsys):
        assert destroy_main(_args(stack_dir, '--yes')) == 0
        assert 'No managed resources' in capsys.readouterr().out

    def test_destroy_nothing_json_output(self, stack_dir, capsys):
        assert destroy_main(_args(stack_dir, '--json-output')) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'destroy'
        assert data['counts']['succeeded'] == 0

    def test_destroy_declined(self, stack_dir, capsys):
        apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--yes'))
        with patch('builtins.input', return_value=''):
            assert destroy_main(_args(stack_dir)) == 1
        assert len(_state(stack_dir)) == 3


class TestShowAndState:
    """Tests for 'show', 'state' and 'force-unlock' verbs."""

    def test_show(self, stack_dir, capsys):
        plan_file = stack_dir / 'plan.json'
        plan_main(_args(stack_dir, '-f', _manifest(stack_dir), '-o', str(plan_file)))
        capsys.readouterr()
        assert show_main([str(plan_file)]) == 0
        out = capsys.readouterr().out
        assert "Plan for 'demo'" in out
        assert '+ vpc.main (create)' in out

    def test_state_list_and_show(self, stack_dir, capsys):
        apply_main(_args(stack_dir, '-f', _manifest(stack_dir), '--yes'))
        capsys.readouterr()
        assert state_main(_args(stack_dir, 'list')) == 0
        assert capsys.readouterr().out.split() == ['instance.web', 'subnet.app', 'vpc.main']

        assert state_main(_args(stack_dir, 'show', 'subnet.app')) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['id'] == 'subnet.app'
        assert data['attributes']['vpc_id'].startswith('vpc-')

    def test_state_show_missing(self, stack_dir, capsys):
        assert state_main(_args(stack_dir, 'show', 'vpc.nope')) == 1
        assert 'not in state' in capsys.readouterr().err

    def test_force_unlock(self, stack_dir, capsys):
        store = StateStore(stack_dir / 'state' / 'state.json')
        info = store.acquire_lock('apply')
        assert force_unlock_main(_args(stack_dir, 'wrong-id')) == 1
        assert force_unlock_main(_args(stack_dir, info.id)) == 0
        assert store.read_lock() is None


class TestMain:
    """Tests for the top-level dispatcher."""

    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        assert 'Usage: infra-orchestrator <command>' in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert cli.main(['frobnicate']) == 1
        assert "Unknown command 'frobnicate'" in capsys.readouterr().out

    def test_dispatches_to_verb(self):
        with patch('orchestrator.cli.plan_main', return_value=2) as mock_plan:
            assert cli.main(['plan', '-f', 'x.yaml']) == 2
        mock_plan.assert_called_once_with(['-f', 'x.yaml'])

    @patch('cli.get_version', return_value='v1.2.3')
    def test_version(self, mock_version, capsys):
        assert cli.main(['--version']) == 0
        assert 'v1.2.3' in capsys.readouterr().out
