"""Config 模块测试。

测试 TS_* 环境变量解析和配置管理。
"""

from __future__ import annotations

import os
from unittest import mock

import pytest

from trial_stream.config import (
    DEFAULT_ACCEPT_TIMEOUT,
    DEFAULT_GRACE_PERIOD,
    DEFAULT_QUEUE_CAPACITY,
    Config,
    get_config,
    load_config,
    reload_config,
)


class TestDefaults:
    """测试没有任何 TS_* 变量时的默认值。"""

    def test_defaults(self):
        config = load_config()
        assert config.verbose is False
        assert config.grace_period == DEFAULT_GRACE_PERIOD
        assert config.accept_timeout == DEFAULT_ACCEPT_TIMEOUT
        assert config.queue_capacity == DEFAULT_QUEUE_CAPACITY
        assert config.success_exit_codes == frozenset({0})
        assert config.log_debug is False
        assert config.log_file is None

    def test_accept_timeout_unbounded_by_default(self):
        """默认不限制 accept 时间，不连接的 worker 不会被判定失败。"""
        assert DEFAULT_ACCEPT_TIMEOUT is None
        assert load_config().accept_timeout is None
        assert Config().accept_timeout is None


class TestParseBool:
    """测试布尔值解析。"""

    @pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on"])
    def test_truthy_values(self, value: str):
        with mock.patch.dict(os.environ, {"TS_VERBOSE": value}):
            assert load_config().verbose is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
    def test_falsy_values(self, value: str):
        with mock.patch.dict(os.environ, {"TS_VERBOSE": value}):
            assert load_config().verbose is False


class TestDurations:
    """测试 grace period 和 accept 超时解析。"""

    def test_grace_period(self):
        with mock.patch.dict(os.environ, {"TS_GRACE_PERIOD": "0.25"}):
            assert load_config().grace_period == 0.25

    def test_grace_period_clamped(self):
        """超出范围的值被限制到边界。"""
        with mock.patch.dict(os.environ, {"TS_GRACE_PERIOD": "0"}):
            assert load_config().grace_period == 0.01
        with mock.patch.dict(os.environ, {"TS_GRACE_PERIOD": "100000"}):
            assert load_config().grace_period == 600.0

    def test_invalid_grace_period_uses_default(self):
        with mock.patch.dict(os.environ, {"TS_GRACE_PERIOD": "soon"}):
            assert load_config().grace_period == DEFAULT_GRACE_PERIOD

    @pytest.mark.parametrize("value", ["0", "none", "NONE", "off", "-1"])
    def test_accept_timeout_disabled(self, value: str):
        with mock.patch.dict(os.environ, {"TS_ACCEPT_TIMEOUT": value}):
            assert load_config().accept_timeout is None

    def test_accept_timeout(self):
        """显式设置时启用 accept 超时。"""
        with mock.patch.dict(os.environ, {"TS_ACCEPT_TIMEOUT": "5"}):
            assert load_config().accept_timeout == 5.0

    def test_invalid_accept_timeout_uses_default(self):
        with mock.patch.dict(os.environ, {"TS_ACCEPT_TIMEOUT": "later"}):
            assert load_config().accept_timeout is None


class TestQueueAndExitCodes:
    """测试队列容量和成功退出码。"""

    def test_queue_capacity(self):
        with mock.patch.dict(os.environ, {"TS_QUEUE_CAPACITY": "16"}):
            assert load_config().queue_capacity == 16

    def test_queue_capacity_minimum(self):
        with mock.patch.dict(os.environ, {"TS_QUEUE_CAPACITY": "0"}):
            assert load_config().queue_capacity == 1

    def test_success_exit_codes(self):
        """无效项被忽略。"""
        with mock.patch.dict(os.environ, {"TS_SUCCESS_EXIT_CODES": "0, 3,x"}):
            assert load_config().success_exit_codes == frozenset({0, 3})

    def test_empty_exit_codes_mean_zero(self):
        with mock.patch.dict(os.environ, {"TS_SUCCESS_EXIT_CODES": "x,y"}):
            assert load_config().success_exit_codes == frozenset({0})


class TestLogDebug:
    """测试调试日志文件生成。"""

    def test_log_debug_sets_log_file(self):
        with mock.patch.dict(os.environ, {"TS_LOG_DEBUG": "1"}):
            config = load_config()
            assert config.log_debug is True
            assert config.log_file is not None
            assert config.log_file.endswith(".log")
            assert "trial-stream" in config.log_file


class TestGlobalConfig:
    """测试 get_config / reload_config。"""

    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_config_picks_up_env(self):
        with mock.patch.dict(os.environ, {"TS_VERBOSE": "yes"}):
            config = reload_config()
            assert config.verbose is True
            assert get_config() is config

    def test_repr(self):
        text = repr(Config(success_exit_codes=frozenset({2, 0})))
        assert "success_exit_codes=0,2" in text
        assert "verbose=False" in text
