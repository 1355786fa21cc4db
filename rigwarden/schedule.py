"""
RigWarden Schedule evaluation

Pure functions over MiningSchedule / ScheduledRestart and a local datetime.
Windows are inclusive at both ends, to the minute. A window whose start is
after its end crosses midnight; the part after midnight belongs to the day
the window started on.
"""

from datetime import datetime, timedelta

from rigwarden.config import SCHEDULED_RESTART_TOLERANCE
from rigwarden.models import WEEKDAYS, RunIntent


def to_minutes(hhmm):
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_of(now):
    return now.hour * 60 + now.minute


def weekday_name(moment):
    return WEEKDAYS[moment.weekday()]


def time_in_range(current, start, end):
    """Clock-only membership (minutes since midnight), overnight aware."""
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def window_active(window, now):
    start = to_minutes(window.start_time)
    end = to_minutes(window.end_time)
    cur = minutes_of(now)
    if start <= end:
        return weekday_name(now) in window.days and start <= cur <= end
    if cur >= start:
        return weekday_name(now) in window.days
    if cur <= end:
        return weekday_name(now - timedelta(days=1)) in window.days
    return False


def active_window(schedule, now):
    for window in schedule.windows:
        if window_active(window, now):
            return window
    return None


def evaluate(schedule, now):
    """RunIntent for ``now``. Scheduling disabled means mine around the clock."""
    if not schedule.enabled:
        return RunIntent.should_run
    if active_window(schedule, now) is not None:
        return RunIntent.should_run
    return RunIntent.should_not_run


def next_schedule_change(schedule, now, horizon_days=8):
    """First minute after ``now`` at which evaluate() flips, or None."""
    if not schedule.enabled or not schedule.windows:
        return None
    current = evaluate(schedule, now)
    base = now.replace(second=0, microsecond=0)
    candidates = set()
    for offset in range(horizon_days):
        day = base + timedelta(days=offset)
        for window in schedule.windows:
            for boundary, shift in ((window.start_time, 0), (window.end_time, 1)):
                hours, minutes = divmod(to_minutes(boundary), 60)
                at = day.replace(hour=hours, minute=minutes) + timedelta(minutes=shift)
                if at > now:
                    candidates.add(at)
    for at in sorted(candidates):
        if evaluate(schedule, at) != current:
            return at
    return None


def restart_applies_today(restart, now):
    return not restart.days or weekday_name(now) in restart.days


def restart_due(restart, now, tolerance=SCHEDULED_RESTART_TOLERANCE):
    """(date, time) key if ``restart`` fires at ``now`` within ``tolerance`` seconds, else None."""
    if not restart_applies_today(restart, now):
        return None
    hours, minutes = divmod(to_minutes(restart.time), 60)
    target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    elapsed = (now - target).total_seconds()
    if 0 <= elapsed <= tolerance:
        return (target.date().isoformat(), restart.time)
    return None


def next_restart(restarts, now, horizon_days=8):
    """(datetime, ScheduledRestart) of the soonest upcoming restart, or None."""
    best = None
    base = now.replace(second=0, microsecond=0)
    for restart in restarts:
        hours, minutes = divmod(to_minutes(restart.time), 60)
        for offset in range(horizon_days):
            at = (base + timedelta(days=offset)).replace(hour=hours, minute=minutes)
            if at <= now or not restart_applies_today(restart, at):
                continue
            if best is None or at < best[0]:
                best = (at, restart)
            break
    return best


def describe(schedules, now, is_running):
    """Human-facing schedule report (the ``scheduleStatus`` payload)."""
    mining = schedules.scheduled_mining
    cur = minutes_of(now)
    day = weekday_name(now)

    periods = []
    for index, window in enumerate(mining.windows):
        in_day = day in window.days
        in_time = time_in_range(cur, to_minutes(window.start_time), to_minutes(window.end_time))
        periods.append({
            "id": index + 1,
            "startTime": window.start_time,
            "endTime": window.end_time,
            "days": list(window.days),
            "inDay": in_day,
            "inTimeRange": in_time,
            "isActive": window_active(window, now),
        })

    upcoming = None
    found = next_restart(schedules.scheduled_restarts, now)
    if found:
        at, restart = found
        until = int((at - now.replace(second=0, microsecond=0)).total_seconds() // 60)
        upcoming = {
            "time": restart.time,
            "days": list(restart.days),
            "minutes": to_minutes(restart.time),
            "isToday": at.date() == now.date(),
            "timeUntil": until,
        }

    change = next_schedule_change(mining, now)
    return {
        "currentDay": day,
        "currentTime": now.strftime("%H:%M"),
        "schedulingEnabled": mining.enabled,
        "activePeriod": next((p for p in periods if p["isActive"]), None),
        "allPeriods": periods,
        "nextRestart": upcoming,
        "restartTimes": [r.time for r in schedules.scheduled_restarts],
        "nextScheduleChange": change.isoformat() if change else None,
        "shouldMine": evaluate(mining, now) == RunIntent.should_run,
        "isRunning": is_running,
    }


def now_local():
    return datetime.now()
