"""
Path layout and logging setup tests.
"""

import logging
import os
import sys
import time

import pytest

from duet.utils.logger import (
    LIBRARY_FACILITIES,
    cleanup_old_logs,
    get_call_logger,
    set_log_level,
    setup_main_logger,
)
from duet.utils.paths import Paths


# ============================================================================
# Paths
# ============================================================================

def test_dot_mode(tmp_path):
    paths = Paths(mode='dot', home=tmp_path)

    assert paths.config_dir == tmp_path / '.duet' / 'config'
    assert paths.log_dir == tmp_path / '.duet' / 'logs'
    assert paths.call_settings_path() == tmp_path / '.duet' / 'config' / 'calls.json'
    assert paths.config_dir.is_dir()


def test_xdg_mode(tmp_path):
    paths = Paths(mode='xdg', home=tmp_path)

    assert paths.config_dir == tmp_path / '.config' / 'duet'
    assert paths.data_dir == tmp_path / '.local' / 'share' / 'duet'
    assert paths.main_log_path() == tmp_path / '.local' / 'share' / 'duet' / 'logs' / 'main.log'


def test_dev_mode_with_profile(tmp_path):
    paths = Paths(profile='work', mode='dev', project_root=tmp_path)

    assert paths.config_dir == tmp_path / 'duet_dev_paths' / 'config' / 'work'
    assert paths.xmpp_config_path() == tmp_path / 'duet_dev_paths' / 'config' / 'work' / 'xmpp.yaml'


# ============================================================================
# Logging
# ============================================================================

@pytest.fixture
def restore_logging(monkeypatch):
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)
    yield
    for name in ('duet',) + LIBRARY_FACILITIES:
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


def test_call_logger_is_a_facility_child():
    logger = get_call_logger('0123456789abcdef')
    assert logger.name == 'duet-call.01234567'


def test_setup_writes_main_and_library_logs(tmp_path, restore_logging):
    log_path = tmp_path / 'main.log'

    logger = setup_main_logger('DEBUG', log_path=log_path)
    get_call_logger('abcdef0123').info("call facility line")
    logging.getLogger('duet-xmpp.client').warning("xmpp facility line")
    for name in ('duet',) + LIBRARY_FACILITIES:
        for handler in logging.getLogger(name).handlers:
            handler.flush()

    text = log_path.read_text()
    assert logger.name == 'duet'
    assert 'call facility line' in text
    assert 'xmpp facility line' in text
    assert not logging.getLogger('duet-call').propagate


def test_console_only_logging(restore_logging):
    logger = setup_main_logger('INFO', log_to_file=False)

    assert len(logger.handlers) == 1
    set_log_level('duet', 'ERROR')
    assert logger.level == logging.ERROR
    assert logger.handlers[0].level == logging.ERROR


def test_cleanup_old_logs(tmp_path):
    old = tmp_path / 'main.log.1'
    new = tmp_path / 'main.log'
    other = tmp_path / 'notes.txt'
    for path in (old, new, other):
        path.write_text('x')
    ten_days_ago = time.time() - 10 * 86400
    os.utime(old, (ten_days_ago, ten_days_ago))
    os.utime(other, (ten_days_ago, ten_days_ago))

    assert cleanup_old_logs(7, log_dir=tmp_path) == 1
    assert not old.exists()
    assert new.exists()
    assert other.exists()
    assert cleanup_old_logs(0, log_dir=tmp_path) == 0
