import asyncio
import re
from dataclasses import replace

import pytest

from scope_bench import (
    ArgumentError,
    Keysight_33500B,
    Keysight_MSOX3104T,
    ParamStats,
    SweepConfig,
    SweepState,
    WaveformSweep,
    measure_with_retry,
    tolerance_check,
)

from mock_instruments import MockFunctionGenerator, MockOscilloscope, MockTransport

TIMESTAMPED = re.compile(r"^\[\d{2}:\d{2}:\d{2}\] ")


async def _connected(*devices):
    for device in devices:
        await device.connect()


# ==========================================
# TOLERANCE AND RETRY
# ==========================================


@pytest.mark.parametrize(
    "expected, actual, tolerance, passed",
    [
        (0, 0.02, 15, True),
        (0, -0.02, 15, True),
        (0, 0.0201, 15, False),
        (0, 0.01, 0, True),
        (100, 115, 15, True),
        (100, 85, 15, True),
        (100, 115.5, 15, False),
        (100, 84, 15, False),
        (-2, -2.2, 15, True),
        (-2, -2.4, 15, False),
        (1000, -1, 15, False),
    ],
)
def test_tolerance_check(expected, actual, tolerance, passed):
    assert tolerance_check(expected, actual, tolerance) is passed


@pytest.mark.asyncio
async def test_measure_with_retry_returns_first_valid_reading():
    readings = iter([1e37, 1e37, 3.5])
    calls = []

    async def measure():
        calls.append(1)
        return next(readings)

    assert await measure_with_retry(measure, retries=3, delay=0) == 3.5
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_measure_with_retry_gives_up():
    async def measure():
        return 9.9e37

    assert await measure_with_retry(measure, retries=3, delay=0) == -1


# ==========================================
# CONFIG AND STATS
# ==========================================


@pytest.mark.parametrize(
    "overrides",
    [
        {"frequencies": ()},
        {"shapes": ()},
        {"amplitudes": (1.0, -0.5)},
        {"duty_cycles": (0.0,)},
        {"retries": 0},
        {"max_pulse_duty": 1.5},
    ],
)
def test_sweep_config_validation(overrides):
    with pytest.raises(ArgumentError):
        SweepConfig(**overrides)


def test_default_config_values():
    config = SweepConfig()

    assert config.shapes == ("SIN", "SQU", "RAMP", "PULS")
    assert config.frequencies == (100.0, 500.0, 1000.0)
    assert config.tolerance_pct == 15.0
    assert list(config.stat_keys()) == [
        ("SIN", "freq"), ("SIN", "amp"),
        ("SQU", "freq"), ("SQU", "amp"), ("SQU", "duty"),
        ("RAMP", "freq"), ("RAMP", "amp"),
        ("PULS", "freq"), ("PULS", "amp"), ("PULS", "pulseWidth"),
    ]


def test_param_stats_snapshot_is_a_copy():
    stats = ParamStats()
    stats.reset([("SIN", "freq")])
    stats.record("SIN", "freq", True)
    snapshot = stats.snapshot()

    stats.record("SIN", "freq", False)

    assert snapshot[("SIN", "freq")] == (1, 1)
    assert stats.get("SIN", "freq") == (2, 1)
    assert stats.get("SIN", "freq").pass_rate == 50.0
    assert stats.by_shape() == {"SIN": {"freq": (2, 1)}}


# ==========================================
# SWEEP RUNS
# ==========================================


@pytest.mark.asyncio
async def test_sweep_scores_every_combination(scope, generator, fast_config):
    lines = []
    sweep = WaveformSweep(scope, generator, fast_config, status=lines.append)

    result = await sweep.run(1)

    assert result.state is SweepState.COMPLETED
    assert result.error is None
    stats = result.stats
    for shape in ("SIN", "SQU"):
        assert stats[(shape, "freq")] == (4, 4)
        assert stats[(shape, "amp")] == (4, 4)
    assert stats[("SQU", "duty")] == (12, 12)
    assert ("SIN", "duty") not in stats
    measured_duty = [call for call in scope.calls if call[0] == "measure_duty_cycle"]
    assert len(measured_duty) == 12
    assert all(TIMESTAMPED.match(line) for line in lines)


@pytest.mark.asyncio
async def test_sweep_applies_scaled_scope_settings(scope, generator, fast_config):
    sweep = WaveformSweep(scope, generator, replace(fast_config, shapes=("SIN",)))

    await sweep.run(2)

    assert ("set_timebase_scale", pytest.approx(1 / 1000)) in scope.calls
    assert ("set_timebase_scale", pytest.approx(1 / 5000)) in scope.calls
    # expected Vpp 2.0 V over six divisions with 20% headroom
    assert ("set_vertical_scale", 2, pytest.approx(0.4)) in scope.calls
    assert ("enable_output", 2, True) in generator.calls


@pytest.mark.asyncio
async def test_sweep_report(scope, generator, fast_config):
    sweep = WaveformSweep(scope, generator, fast_config)

    result = await sweep.run(1)

    assert "SIN WAVE Results:" in result.report
    assert "   Frequency: 4/4 (100.0% success)" in result.report
    assert "   Duty Cycle: 12/12 (100.0% success)" in result.report
    assert result.report[-1].startswith("Total Test Time: 0m ")
    assert any(
        line.endswith("Wave=SIN, Freq=100 Hz, Amp=0.5 V => "
                      "MeasFreq=100.00 Hz PASS, MeasAmplitude=1.00 V PASS")
        for line in sweep.log
    )


@pytest.mark.asyncio
async def test_pulse_width_clamped_to_period(scope, generator, fast_config):
    config = replace(
        fast_config, shapes=("PULS",), frequencies=(1000.0,), amplitudes=(1.0,),
        pulse_widths_us=(100.0, 1000.0),
    )
    sweep = WaveformSweep(scope, generator, config)

    result = await sweep.run(1)

    widths = [call[2] for call in generator.calls if call[0] == "set_pulse_width"]
    assert widths == [pytest.approx(1e-4), pytest.approx(8e-4)]
    assert result.stats[("PULS", "pulseWidth")] == (2, 2)
    assert any("SetPulseWidth=800.00 us" in line for line in sweep.log)


@pytest.mark.asyncio
async def test_invalid_frequency_is_retried(generator, fast_config):
    scope = MockOscilloscope(generator, invalid_frequency_reads=2)
    config = replace(fast_config, shapes=("SIN",), frequencies=(500.0,), amplitudes=(1.0,))

    result = await WaveformSweep(scope, generator, config).run(1)

    assert result.stats[("SIN", "freq")] == (1, 1)
    assert sum(1 for call in scope.calls if call[0] == "measure_frequency") == 3


@pytest.mark.asyncio
async def test_unmeasurable_frequency_reported_as_minus_one(generator, fast_config):
    scope = MockOscilloscope(generator, invalid_frequency_reads=10)
    config = replace(fast_config, shapes=("SIN",), frequencies=(500.0,), amplitudes=(1.0,))
    sweep = WaveformSweep(scope, generator, config)

    result = await sweep.run(1)

    assert result.stats[("SIN", "freq")] == (1, 0)
    assert result.stats[("SIN", "amp")] == (1, 1)
    assert any("MeasFreq=-1.00 Hz FAIL" in line for line in sweep.log)


@pytest.mark.asyncio
async def test_stop_mid_run_keeps_scored_combinations(generator, fast_config):
    sweep = None

    def stop_after_first_amplitude(method, channel):
        if method == "measure_amplitude":
            sweep.stop()

    scope = MockOscilloscope(generator, on_measure=stop_after_first_amplitude)
    sweep = WaveformSweep(scope, generator, replace(fast_config, shapes=("SIN",)))

    result = await sweep.run(1)

    assert result.state is SweepState.STOPPED
    assert result.stats[("SIN", "freq")] == (1, 1)
    assert result.stats[("SIN", "amp")] == (1, 1)
    assert sum(1 for call in generator.calls if call[0] == "set_waveform") == 1
    assert any("Test stopped by user." in line for line in sweep.log)


@pytest.mark.asyncio
async def test_stop_between_duty_steps(generator, fast_config):
    sweep = None

    def stop_on_second_duty(method, channel):
        if method == "measure_duty_cycle" and len(scope_calls()) == 1:
            sweep.stop()

    scope = MockOscilloscope(generator, on_measure=stop_on_second_duty)

    def scope_calls():
        return [call for call in scope.calls if call[0] == "measure_duty_cycle"]

    sweep = WaveformSweep(scope, generator, replace(fast_config, shapes=("SQU",)))

    result = await sweep.run(1)

    assert result.state is SweepState.STOPPED
    assert result.stats[("SQU", "duty")] == (2, 2)


@pytest.mark.asyncio
async def test_step_failure_does_not_abort_sweep(scope, generator, fast_config):
    scope.fail_next("set_vertical_scale")
    sweep = WaveformSweep(scope, generator, replace(fast_config, shapes=("SIN",)))

    result = await sweep.run(1)

    assert result.state is SweepState.COMPLETED
    assert result.stats[("SIN", "freq")] == (3, 3)
    failures = [line for line in sweep.log if "Exception while testing SIN on CH1" in line]
    assert len(failures) == 1
    assert "Simulated I/O failure" in failures[0]


@pytest.mark.asyncio
async def test_duty_step_failure_continues_with_next_duty(scope, generator, fast_config):
    generator.fail_next("set_square_duty_cycle")
    config = replace(fast_config, shapes=("SQU",), frequencies=(100.0,), amplitudes=(1.0,))

    result = await WaveformSweep(scope, generator, config).run(1)

    assert result.stats[("SQU", "duty")] == (2, 2)


@pytest.mark.asyncio
async def test_connects_instruments_before_sweeping(scope, generator, fast_config):
    assert not scope.is_connected and not generator.is_connected
    lines = []

    result = await WaveformSweep(scope, generator, fast_config, status=lines.append).run(1)

    assert result.state is SweepState.COMPLETED
    assert scope.is_connected and generator.is_connected
    assert any("Not connected to oscilloscope" in line for line in lines)


@pytest.mark.asyncio
async def test_connect_failure_completes_with_error(fast_config):
    generator = MockFunctionGenerator(connect_error="Connection refused")
    scope = MockOscilloscope(generator)

    sweep = WaveformSweep(scope, generator, fast_config)
    result = await sweep.run(1)

    assert result.state is SweepState.COMPLETED
    assert "function generator" in result.error
    assert "Connection refused" in result.error
    assert result.stats == {}
    assert generator.calls == []


@pytest.mark.asyncio
async def test_stop_while_idle_is_noop(scope, generator, fast_config):
    sweep = WaveformSweep(scope, generator, fast_config)
    sweep.stop()

    assert sweep.state is SweepState.IDLE
    assert (await sweep.run(1)).state is SweepState.COMPLETED


@pytest.mark.asyncio
async def test_stats_reset_between_runs(scope, generator, fast_config):
    await _connected(scope, generator)
    sweep = WaveformSweep(scope, generator, replace(fast_config, shapes=("SIN",)))

    await sweep.run(1)
    result = await sweep.run(1)

    assert result.stats[("SIN", "freq")] == (4, 4)
    assert sweep.elapsed == result.elapsed


@pytest.mark.asyncio
@pytest.mark.parametrize("channel", [0, 3])
async def test_invalid_sweep_channel(scope, generator, fast_config, channel):
    with pytest.raises(ArgumentError):
        await WaveformSweep(scope, generator, fast_config).run(channel)
    assert generator.calls == []


@pytest.mark.asyncio
async def test_cancelled_run_ends_stopped(scope, generator, fast_config):
    sweep = WaveformSweep(scope, generator, replace(fast_config, generator_settle=0.05))

    task = asyncio.create_task(sweep.run(1))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sweep.state is SweepState.STOPPED
    assert not sweep.running
    assert any("Test cancelled." in line for line in sweep.log)

    sweep.config = fast_config
    assert (await sweep.run(1)).state is SweepState.COMPLETED


# ==========================================
# REAL CONTROLLERS OVER A SCRIPTED TRANSPORT
# ==========================================


@pytest.mark.asyncio
async def test_sweep_drives_keysight_controllers():
    gen_transport = MockTransport()
    scope_transport = MockTransport()

    def echo_setting(command):
        # the write just before the readback query carries the value
        return scope_transport.writes[-2].split()[-1]

    scope_transport.responses.update({
        ":TIMebase:SCALe?": echo_setting,
        ":CHANnel1:SCALe?": echo_setting,
        ":MEASure:FREQuency?": "1000",
        ":MEASure:VAMPlitude?": "2.0",
        ":MEASure:DUTYcycle?": "10",
    })
    await gen_transport.connect()
    await scope_transport.connect()
    generator = Keysight_33500B(transport=gen_transport)
    scope = Keysight_MSOX3104T(transport=scope_transport)
    config = SweepConfig(
        shapes=("SIN", "PULS"),
        frequencies=(1000.0,),
        amplitudes=(1.0,),
        pulse_widths_us=(100.0,),
        generator_settle=0,
        scope_settle=0,
        duty_settle=0,
        pulse_settle=0,
        retry_delay=0,
    )

    result = await WaveformSweep(scope, generator, config).run(1)

    assert result.state is SweepState.COMPLETED
    assert result.stats == {
        ("SIN", "freq"): (1, 1),
        ("SIN", "amp"): (1, 1),
        ("PULS", "freq"): (1, 1),
        ("PULS", "amp"): (1, 1),
        ("PULS", "pulseWidth"): (1, 1),
    }
    for command in (
        ":SOURce1:FUNCtion SIN",
        ":SOURce1:FREQuency 1000",
        ":SOURce1:VOLTage 1",
        ":OUTPut1:STATe ON",
        ":SOURce1:FUNCtion PULS",
        ":SOURce1:FUNCtion:PULSe:WIDTh 0.0001",
    ):
        assert command in gen_transport.writes
    assert gen_transport.writes.index(":SOURce1:FUNCtion:PULSe:WIDTh 0.0001") > gen_transport.writes.index(
        ":SOURce1:FUNCtion PULS"
    )
    assert ":TIMebase:SCALe 0.0001" in scope_transport.writes
    assert ":CHANnel1:SCALe 0.4" in scope_transport.writes
    assert ":MEASure:SOURce CHANnel1" in scope_transport.writes
