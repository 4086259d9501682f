## Tests for the environment check script.

from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

# Check if torch is available
try:
    import torch.distributed as dist
    GLOO_AVAILABLE = dist.is_available() and dist.is_gloo_available()
except ImportError:
    GLOO_AVAILABLE = False

import verify_setup


def test_report_separates_critical_and_optional(capsys):
    report = verify_setup.Report()
    report.record("needed", False, "install it")
    report.record("nice to have", False, critical=False)
    report.attempt("raises", lambda: 1 / 0)
    report.attempt("works", lambda: None)

    assert report.failures == ["needed", "raises"]
    out = capsys.readouterr().out
    assert "FAIL needed" in out
    assert "warn nice to have" in out
    assert "ZeroDivisionError" in out
    assert "ok   works" in out


@pytest.mark.skipif(not GLOO_AVAILABLE, reason="PyTorch with Gloo not available")
@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="loopback interface name is Linux-specific")
def test_loopback_allreduce_leaves_no_group():
    verify_setup._loopback_allreduce("lo")
    assert not dist.is_initialized()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
