"""
Shared fixtures for GPU SSH Stats tests.
"""
import pytest

from gpu_ssh_stats.models import ConnectionProfile

SAMPLE_OUTPUT = """\
___SECTION_GPU___
0, GPU-aaaa, NVIDIA A100-SXM4-40GB, 87, 40, 30000, 40960, 65, 250.5, 400.00
1, GPU-bbbb, NVIDIA A100-SXM4-40GB, 0, 0, 4, 40960, 31, 55.1, 400.00
___SECTION_CPU___
%Cpu(s): 12.5 us,  2.5 sy,  0.0 ni, 85.0 id,  0.0 wa,  0.0 hi,  0.0 si,  0.0 st
___SECTION_MEM___
Mem:          515896       20480      400000        1024       95416      490000
___SECTION_PROCESS___
GPU-aaaa,4242,29000,alice,python train.py --epochs 10
NONE,777,120.5,bob,/usr/sbin/sshd -D
"""


@pytest.fixture
def sample_output():
    """Inspection output of a node with two GPUs."""
    return SAMPLE_OUTPUT


@pytest.fixture
def make_profile():
    """Factory for connection profiles."""

    def _make(name="node-01", **kwargs):
        kwargs.setdefault("host", f"{name}.cluster")
        kwargs.setdefault("username", "ubuntu")
        return ConnectionProfile(name=name, id=name, **kwargs)

    return _make
