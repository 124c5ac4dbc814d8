import pytest

from olly.config import Config, get_config, set_config
from olly.llm import set_provider


@pytest.fixture(autouse=True)
def isolated_config(tmp_path):
    """Point the global config at tmp_path and keep audit logs out of the tree."""
    old_cfg = get_config().model_copy(deep=True)
    cfg = Config()
    cfg.safety.project_root = str(tmp_path)
    cfg.safety.enable_audit_log = False
    set_config(cfg)
    try:
        yield cfg
    finally:
        set_config(old_cfg)
        set_provider(None)
