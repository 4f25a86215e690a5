import logging

import pytest
import torch

from fast_lora.engine.config_utils.logging import configure_logging

logger = logging.getLogger(__name__)


def pytest_configure(config):
    configure_logging(log_timestamps=False)


@pytest.fixture(autouse=True)
def set_seed():
    torch.manual_seed(0)
