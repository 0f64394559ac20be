# PID Tune Analysis - BBL Parser
# Copyright (C) 2024
# License: GPLv3

"""
BBL file parser using orangebox library.
Builds a :class:`FlightLog` (gyro, setpoint, throttle, D-term and PID
gains) from a blackbox log.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from orangebox import Parser

from .errors import InvalidInputError
from .models import AXES, Axis, FlightLog, PIDGains, TimeSeries

logger = logging.getLogger(__name__)

_AXIS_INDEX = {Axis.ROLL: 0, Axis.PITCH: 1, Axis.YAW: 2}


def safe_float_convert(value: Any) -> float:
    """
    Safely convert a value to float, returning NaN for invalid values.

    Args:
        value: Value to convert (can be string, number, None, etc.)

    Returns:
        Float value, or np.nan if conversion fails
    """
    if value is None or value == '':
        return np.nan
    try:
        return float(value)
    except (ValueError, TypeError):
        return np.nan


def parse_pid_string(pid_string: str) -> Tuple[float, float, float]:
    """
    Parse a PID string like "45,80,35" into P, I, D values.

    Returns:
        Tuple of (P, I, D) values, zeros when the string is malformed
    """
    values = _header_values(pid_string)
    if len(values) >= 3:
        return values[0], values[1], values[2]
    return 0.0, 0.0, 0.0


def _header_values(value: Any) -> List[float]:
    """Header value as a list of floats; accepts "a,b,c" strings, lists and scalars."""
    if isinstance(value, str):
        parts = value.split(',')
    elif isinstance(value, (list, tuple)):
        parts = value
    else:
        parts = [value]
    try:
        return [float(str(p).strip()) for p in parts]
    except ValueError:
        return []


def _per_axis_header(headers: Dict, keys: List[str], idx: int) -> Optional[float]:
    for key in keys:
        if key not in headers:
            continue
        values = _header_values(headers[key])
        if len(values) > idx:
            return values[idx]
        if len(values) == 1:
            return values[0]
    return None


def extract_pid_params(headers: Dict, axis: Axis) -> PIDGains:
    """
    Extract PID gains for a specific axis from headers.

    Betaflight writes ``rollPID: "45,80,35"``; some firmwares write one
    header per term instead.

    Args:
        headers: Dictionary of log headers
        axis: Axis to extract

    Returns:
        PIDGains with the values found (zero where absent)
    """
    axis = Axis(axis)
    idx = _AXIS_INDEX[axis]
    gains = PIDGains()

    pid_key = f"{axis.value}PID"
    if pid_key in headers:
        gains.p, gains.i, gains.d = parse_pid_string(headers[pid_key])

    if gains.p == 0 and gains.i == 0 and gains.d == 0:
        for term in ('p', 'i', 'd'):
            value = _per_axis_header(headers, [f'{axis.value}_{term}', f'{term}_{axis.value}'], idx)
            if value is not None:
                setattr(gains, term, value)

    ff = _per_axis_header(headers, ['feedforward_weight', 'ff_weight', f'ff_{axis.value}'], idx)
    if ff is not None:
        gains.f = ff

    d_min = _per_axis_header(headers, ['d_min', f'd_min_{axis.value}'], idx)
    if d_min is not None:
        gains.d_min = d_min

    return gains


def get_field_index(field_names: List[str], *names: str) -> Optional[int]:
    """
    Find the index of a field by checking multiple possible names.

    Args:
        field_names: List of field names from the parser
        *names: Possible field names to search for

    Returns:
        Index of the first matching field, or None if not found
    """
    for name in names:
        for i, field in enumerate(field_names):
            # Handle field names with brackets like 'gyroADC[0]'
            if field == name or field.replace('[', '_').replace(']', '_').rstrip('_') == name:
                return i
    return None


def estimate_sample_rate(time_us: np.ndarray) -> Optional[float]:
    """
    Sample rate in Hz from frame timestamps in microseconds.

    Uses the median positive interval, ignoring NaN and time jumps backwards.
    """
    if len(time_us) < 2:
        return None
    diffs = np.diff(time_us)
    valid = diffs[~np.isnan(diffs) & (diffs > 0)]
    if len(valid) == 0:
        return None
    return 1e6 / float(np.median(valid))


def _column(data: np.ndarray, field_names: List[str], *names: str) -> Optional[np.ndarray]:
    idx = get_field_index(field_names, *names)
    if idx is None:
        return None
    return np.nan_to_num(data[:, idx])


def parse_bbl_file(file_path: str, log_index: int = 1) -> FlightLog:
    """
    Parse one log of a BBL file.

    Args:
        file_path: Path to the BBL file
        log_index: Index of the log within the file (1-based)

    Returns:
        FlightLog of the selected log

    Raises:
        InvalidInputError: If the log has no frames, lacks gyro fields, or
            its sample rate cannot be determined
    """
    parser = Parser.load(file_path, log_index=log_index, allow_invalid_header=True)

    headers = parser.headers
    field_names = parser.field_names

    rows = [[safe_float_convert(val) for val in frame.data] for frame in parser.frames()]
    if not rows:
        raise InvalidInputError(f"Log {log_index} of {file_path} contains no frames")
    data = np.array(rows, dtype=float)

    time_idx = get_field_index(field_names, 'time', 'time_us')
    if time_idx is None:
        raise InvalidInputError(f"Log {log_index} has no time field")
    time_us = data[:, time_idx]
    sample_rate = estimate_sample_rate(time_us)
    if sample_rate is None:
        raise InvalidInputError(f"Cannot determine the sample rate of log {log_index}")
    time_s = np.nan_to_num(time_us - np.nanmin(time_us)) / 1e6

    def series(values):
        return TimeSeries(time=time_s, values=values)

    gyro, setpoint, dterm = {}, {}, {}
    for axis in AXES:
        i = _AXIS_INDEX[axis]
        gyro_values = _column(data, field_names, f'gyroADC[{i}]', f'gyro[{i}]')
        if gyro_values is None:
            raise InvalidInputError(f"Log {log_index} has no gyro field for {axis.value}")
        gyro[axis] = series(gyro_values)

        sp_values = _column(data, field_names, f'setpoint[{i}]', f'rcCommand[{i}]')
        if sp_values is None:
            logger.warning("Log %d has no setpoint for %s, using zeros", log_index, axis.value)
            sp_values = np.zeros(len(data))
        setpoint[axis] = series(sp_values)

        d_values = _column(data, field_names, f'axisD[{i}]')
        if d_values is not None:
            dterm[axis] = series(d_values)

    throttle = _column(data, field_names, 'setpoint[3]', 'rcCommand[3]')

    logger.debug("Parsed log %d: %d frames at %.0f Hz", log_index, len(data), sample_rate)
    return FlightLog(
        sample_rate_hz=sample_rate,
        gyro=gyro,
        setpoint=setpoint,
        throttle=series(throttle) if throttle is not None else None,
        dterm=dterm or None,
        pid_gains={axis: extract_pid_params(headers, axis) for axis in AXES},
        log_index=log_index,
    )


def get_log_count(file_path: str) -> int:
    """
    Get the number of logs in a BBL file.

    Args:
        file_path: Path to the BBL file

    Returns:
        Number of logs in the file
    """
    parser = Parser.load(file_path, log_index=1, allow_invalid_header=True)
    return parser.reader.log_count


def parse_all_logs(file_path: str) -> List[FlightLog]:
    """
    Parse all logs from a BBL file, skipping logs that fail to parse.

    Args:
        file_path: Path to the BBL file

    Returns:
        List of FlightLog objects, one per readable log
    """
    logs = []
    for i in range(1, get_log_count(file_path) + 1):
        try:
            logs.append(parse_bbl_file(file_path, log_index=i))
        except Exception as e:
            logger.warning("Failed to parse log %d: %s", i, e)
    return logs
