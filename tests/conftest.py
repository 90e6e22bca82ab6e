import pytest

from core.settings import AllocationSettings


@pytest.fixture
def settings():
    """メトリクス記録を無効化した既定設定。"""
    return AllocationSettings(metrics_enabled=False)


@pytest.fixture
def selector(settings):
    from engine.selector import AlgorithmSelector

    return AlgorithmSelector(settings=settings)
