"""
Tests for Interface Acquisition
===============================

Uses a fake clock so the one-second claim window is exercised without
actually waiting for it.
"""

import pytest
import usb.core

from kendryte_loader.comms.claim import acquire_interface
from kendryte_loader.config import CLAIM_INTERFACE_PERIOD, CLAIM_INTERFACE_TIMEOUT
from kendryte_loader.errors import CommsError, InterfaceClaimError

from conftest import FakeDevice


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class AlwaysBusy:
    """Device whose interface is never released by the other holder."""

    def __init__(self):
        self.attempts = 0

    def claim_interface(self, number):
        self.attempts += 1
        raise usb.core.USBError("Resource busy", errno=16)


class TestAcquireInterface:
    """Tests for acquire_interface()."""

    def test_first_attempt_succeeds(self):
        device = FakeDevice()
        clock = FakeClock()
        iface = acquire_interface(device, 0, clock=clock, sleep=clock.sleep)
        assert iface is device.interface
        assert device.claim_attempts == 1
        assert clock.sleeps == []

    def test_succeeds_after_transient_failures(self):
        device = FakeDevice(claim_failures=5)
        clock = FakeClock()
        iface = acquire_interface(device, 0, clock=clock, sleep=clock.sleep)
        assert iface is device.interface
        assert device.claim_attempts == 6
        assert clock.sleeps == [CLAIM_INTERFACE_PERIOD] * 5

    def test_claims_requested_interface_number(self):
        device = FakeDevice()
        clock = FakeClock()
        iface = acquire_interface(device, 2, clock=clock, sleep=clock.sleep)
        assert iface.number == 2

    def test_gives_up_after_window(self):
        device = AlwaysBusy()
        clock = FakeClock()
        start = clock.now

        with pytest.raises(InterfaceClaimError) as excinfo:
            acquire_interface(device, 0, clock=clock, sleep=clock.sleep)

        elapsed = clock.now - start
        assert elapsed >= CLAIM_INTERFACE_TIMEOUT
        assert elapsed <= CLAIM_INTERFACE_TIMEOUT + CLAIM_INTERFACE_PERIOD + 1e-9
        assert excinfo.value.attempts == device.attempts
        assert excinfo.value.interface_number == 0

    def test_retry_cadence_is_constant(self):
        device = AlwaysBusy()
        clock = FakeClock()
        with pytest.raises(InterfaceClaimError):
            acquire_interface(device, 0, timeout=0.01, period=0.001,
                              clock=clock, sleep=clock.sleep)
        assert set(clock.sleeps) == {0.001}
        # Roughly timeout / period attempts, no backoff
        assert 10 <= device.attempts <= 12

    def test_error_carries_last_cause(self):
        device = AlwaysBusy()
        clock = FakeClock()
        with pytest.raises(InterfaceClaimError) as excinfo:
            acquire_interface(device, 1, timeout=0.005, period=0.001,
                              clock=clock, sleep=clock.sleep)
        assert isinstance(excinfo.value.cause, usb.core.USBError)
        assert "failure claiming USB interface 1" in str(excinfo.value)

    def test_comms_errors_are_retried(self):
        class Flaky:
            calls = 0

            def claim_interface(self, number):
                Flaky.calls += 1
                if Flaky.calls < 3:
                    raise CommsError("not yet")
                return "claimed"

        clock = FakeClock()
        assert acquire_interface(Flaky(), 0, clock=clock, sleep=clock.sleep) == "claimed"

    def test_unexpected_errors_propagate(self):
        class Broken:
            def claim_interface(self, number):
                raise RuntimeError("backend crashed")

        clock = FakeClock()
        with pytest.raises(RuntimeError):
            acquire_interface(Broken(), 0, clock=clock, sleep=clock.sleep)
