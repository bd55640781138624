import pytest

from mock_instruments import (
    MockFunctionGenerator,
    MockOscilloscope,
    MockResourceManager,
    MockTransport,
    MockVisaResource,
)
from scope_bench import SweepConfig

SCOPE_ADDRESS = "USB0::0x2A8D::0x1770::MOCK0001::0::INSTR"


@pytest.fixture
def visa_resource():
    return MockVisaResource(SCOPE_ADDRESS)


@pytest.fixture
def resource_manager(visa_resource):
    rm = MockResourceManager()
    rm.add(visa_resource)
    return rm


@pytest.fixture
def transport():
    return MockTransport()


@pytest.fixture
def generator():
    return MockFunctionGenerator()


@pytest.fixture
def scope(generator):
    return MockOscilloscope(generator)


@pytest.fixture
def fast_config():
    """Small sweep grid with all settle delays removed."""
    return SweepConfig(
        shapes=("SIN", "SQU"),
        frequencies=(100.0, 500.0),
        amplitudes=(0.5, 1.0),
        generator_settle=0,
        scope_settle=0,
        duty_settle=0,
        pulse_settle=0,
        retry_delay=0,
    )
