import logging
import textwrap

import pytest

from adoboards import cli
from adoboards.models import BoardSpec

BOARD_CONFIG = """
    common:
      me: "Demo User"
    boards:
      - organization: acme
        project: Proj
        team: Team A
      - organization: acme
        project: Proj
        team: Team B
"""


@pytest.fixture(autouse=True)
def restore_logger():
    logger = logging.getLogger('adoboards')
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    for h in handlers:
        logger.addHandler(h)
    logger.setLevel(level)
    logger.propagate = propagate


def _args(tmp_path, *extra):
    return ['--config', str(tmp_path / 'config.yml'), '--log-file', str(tmp_path / 'adoboards.log'), *extra]


def test_generate_mock_items_is_deterministic():
    spec = BoardSpec('acme', 'Proj', 'Team A')
    items = cli.generate_mock_items(spec, me='Me')
    assert items == cli.generate_mock_items(spec, me='Me')
    assert len({it.id for it in items}) == len(items)
    assert {it.type for it in items} == set(cli.MOCK_TYPES)
    assert any(it.assigned_to == 'Me' for it in items)


def test_setup_logging_honors_level(tmp_path):
    path = cli.setup_logging(str(tmp_path / 'logs' / 'a.log'), 'info')
    logger = logging.getLogger('adoboards')
    logger.debug('hidden line')
    logger.info('visible line')
    for h in logger.handlers:
        h.flush()
    with open(path, encoding='utf-8') as f:
        text = f.read()
    assert 'visible line' in text
    assert 'hidden line' not in text


def test_first_run_creates_template(tmp_path, capsys):
    assert cli.main(_args(tmp_path)) == 0
    assert (tmp_path / 'config.yml').exists()
    assert 'Created a config template' in capsys.readouterr().out


def test_template_config_exits_with_config_error(tmp_path, capsys):
    cli.main(_args(tmp_path))
    assert cli.main(_args(tmp_path)) == 2
    assert 'at least one board' in capsys.readouterr().err


def test_no_ui_summary_with_mock_fetch(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv('MOCK_FETCH', '1')
    (tmp_path / 'config.yml').write_text(textwrap.dedent(BOARD_CONFIG), encoding='utf-8')
    assert cli.main(_args(tmp_path, '--no-ui')) == 0
    out = capsys.readouterr().out
    assert 'Boards: 2' in out
    assert 'Proj/Team A: 24 items' in out
    assert 'Proj/Team B: 24 items' in out


def test_edit_config_runs_editor(tmp_path, monkeypatch):
    opened = []
    monkeypatch.setattr(cli, 'open_in_editor', lambda path: opened.append(path) or True)
    assert cli.main(_args(tmp_path, '--edit-config')) == 0
    assert opened == [str(tmp_path / 'config.yml')]
    assert (tmp_path / 'config.yml').exists()


def test_interactive_run_wires_controller(tmp_path, monkeypatch):
    monkeypatch.setenv('MOCK_FETCH', '1')
    (tmp_path / 'config.yml').write_text(textwrap.dedent(BOARD_CONFIG), encoding='utf-8')
    seen = {}

    def fake_run_ui(controller, prefetch=False):
        seen['controller'] = controller
        seen['prefetch'] = prefetch
        controller.scheduler.shutdown()

    monkeypatch.setattr(cli, 'run_ui', fake_run_ui)
    assert cli.main(_args(tmp_path)) == 0
    controller = seen['controller']
    assert controller.me == 'Demo User'
    assert [b.spec.team for b in controller.boards] == ['Team A', 'Team B']
    assert seen['prefetch'] is False
