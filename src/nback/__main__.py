"""
Entry point: `python -m nback` or `nback-task` script.
Wires all modules together.
"""
from __future__ import annotations


def print_history(rcon, store) -> None:
    """Render the saved session history as a rich table."""
    from rich.table import Table
    import rich.box

    summary = store.summary()
    if summary.empty:
        rcon.print("[yellow]No sessions recorded yet.[/yellow]")
        return
    table = Table(title="Performance history", box=rich.box.SIMPLE_HEAD)
    for col in summary.columns:
        table.add_column(str(col), justify="right")
    for _, row in summary.iterrows():
        table.add_row(*[f"{v:.4g}" if isinstance(v, float) else str(v) for v in row])
    rcon.print(table)


def run_calibration(win, stimuli_obj, session_cfg, session_info, rcon, kb):
    """Calibrate every enabled modality in turn; returns the updated thresholds."""
    from psychopy import core, event as psy_event, logging

    from nback import config, display, staircase, timing
    from nback.config import Modality
    from nback.staircase import CalibrationPhase

    prompts = {
        CalibrationPhase.STIMULUS: "Remember this",
        CalibrationPhase.NOISE: "...",
        CalibrationPhase.PROBE: "Same as the first?",
        CalibrationPhase.RESPONSE: "S = same    D = different",
    }
    timers = timing.TimerQueue(core.Clock())
    state = {"stimulus": None, "phase": CalibrationPhase.IDLE}

    def on_display(stimulus, phase) -> None:
        state["stimulus"], state["phase"] = stimulus, phase
        if phase is CalibrationPhase.RESPONSE:
            win.callOnFlip(kb.clock.reset)
        if stimulus is not None and calibrator.run.modality is Modality.AUDIO:
            display.play_tone(stimulus.frequency, config.CALIBRATION_TIMES_MS["stimulus"])

    def on_complete(partial) -> None:
        for m, value in partial.items():
            rcon.print(f"[bold]Calibrated {m.value}:[/bold] [cyan]{value:.4g}[/cyan]")

    calibrator = staircase.AdaptiveCalibrator(
        session_cfg, timers, variant=session_info.staircase,
        on_display=on_display, on_calibration_complete=on_complete,
    )
    rcon.print(f"[bold]Calibration:[/bold] staircase=[cyan]{session_info.staircase.value}[/cyan]")

    for modality in calibrator.modalities:
        stimuli_obj.message.text = (
            f"{display.MODALITY_LABELS[modality]} calibration\n\n"
            "Press SPACE to start, N to skip."
        )
        psy_event.clearEvents()
        choice = None
        while choice is None:
            stimuli_obj.message.draw()
            win.flip()
            keys = psy_event.getKeys(keyList=["space", "n"] + config.QUIT_KEYS)
            choice = keys[0] if keys else None
        if choice in config.QUIT_KEYS:
            break
        if choice == "n":
            continue

        run = calibrator.start(modality)
        quit_requested = False
        while not run.finished:
            timers.poll()
            display.draw_board(stimuli_obj)
            if state["stimulus"] is not None:
                display.draw_stimulus(
                    stimuli_obj, state["stimulus"],
                    color_enabled=modality is Modality.COLOR,
                    shape_enabled=modality is Modality.SHAPE,
                )
            if state["phase"] is CalibrationPhase.FEEDBACK:
                text = "Correct" if run.last_correct else "Incorrect"
            else:
                text = prompts.get(state["phase"], "")
            display.draw_text(stimuli_obj.prompt, text)
            display.draw_text(
                stimuli_obj.status,
                f"Attempt {run.staircase.n_trials + 1}  |  delta {run.staircase.value:.3f}",
            )
            win.flip()

            for key, rt_s in psy_event.getKeys(
                keyList=list(config.CALIBRATION_KEYS) + [config.END_RUN_KEY] + config.QUIT_KEYS,
                timeStamped=kb.clock,
            ):
                if key in config.CALIBRATION_KEYS:
                    if calibrator.respond(config.CALIBRATION_KEYS[key]) is not None:
                        logging.data(f"Calibration key {key}  rt={rt_s:.3f} s")
                elif key == config.END_RUN_KEY:
                    calibrator.end()
                else:
                    calibrator.end()
                    quit_requested = True
        if quit_requested:
            break

    logging.exp(
        "Calibrated thresholds: "
        + "  ".join(f"{m.value}={v:.4g}" for m, v in calibrator.thresholds.as_dict().items())
    )
    return calibrator.thresholds


def run_training(win, stimuli_obj, session_cfg, session_info, run_dir, rcon, kb):
    """Run one training session; returns the SessionSummary."""
    from psychopy import core, event as psy_event, logging
    from rich.live import Live
    from rich.table import Table
    import rich.box

    from nback import config, display, recorder, scheduler, timing
    from nback.config import Modality

    timers = timing.TimerQueue(core.Clock())
    trial_writer = recorder.TrialLogWriter(run_dir / f"trials_{session_info.subject_id}.csv")

    table = Table(box=rich.box.SIMPLE_HEAD)
    table.add_column("#", justify="right")
    table.add_column("N", justify="right")
    table.add_column("Trial")
    table.add_column("Outcomes")
    table.add_column("Hits", justify="right")
    table.add_column("Misses", justify="right")
    table.add_column("FA", justify="right")

    outcome_style = {"hit": "green", "miss": "yellow", "false_alarm": "red"}

    def log_trials(events) -> None:
        for event, rec in trial_writer.catch_up(events, sched.tracker, session_info.subject_id):
            cells = []
            for m in session_cfg.active_modalities:
                outcome = getattr(rec, f"outcome_{m.value}")
                if outcome in outcome_style:
                    cells.append(f"[{outcome_style[outcome]}]{m.value[0].upper()}:{outcome}[/]")
            score = sched.tracker.score
            table.add_row(
                f"{event.id + 1}/{session_cfg.total_trials}",
                str(event.n),
                event.dev_info if session_cfg.dev_mode else "",
                " ".join(cells),
                str(score.total_hits),
                str(score.total_misses),
                str(score.total_false_alarms),
            )
        live.refresh()

    def on_display(event, visible: bool) -> None:
        if not visible:
            return
        # RT clock starts on the flip that shows the stimulus
        win.callOnFlip(kb.clock.reset)
        log_trials(sched.history[:-1])
        if Modality.AUDIO in session_cfg.enabled:
            display.play_tone(event.stimulus.frequency, session_cfg.stimulus_ms)

    def on_session_end(summary) -> None:
        log_trials(sched.history)

    sched = scheduler.TrialScheduler(
        session_cfg, timers, on_display=on_display, on_session_end=on_session_end,
    )
    key_list = [k for k, m in config.RESPONSE_KEYS.items() if m in session_cfg.enabled]

    # auto_refresh=False prevents a background timer thread during trials
    with Live(table, console=rcon, auto_refresh=False) as live:
        psy_event.clearEvents()
        sched.start()
        while not sched.finished:
            timers.poll()
            if sched.finished:
                break

            display.draw_board(stimuli_obj)
            event = sched.current
            if sched.visible and event is not None:
                display.draw_stimulus(
                    stimuli_obj, event.stimulus,
                    color_enabled=Modality.COLOR in session_cfg.enabled,
                    shape_enabled=Modality.SHAPE in session_cfg.enabled,
                )
            elif session_cfg.variable_n and event is not None:
                display.draw_text(stimuli_obj.lag_watermark, str(event.n))
            if session_cfg.dev_mode and event is not None:
                display.draw_text(stimuli_obj.dev_info, event.dev_info)
            display.draw_text(stimuli_obj.status, f"Trial {sched.trial_count} / {session_cfg.total_trials}")
            display.draw_buttons(stimuli_obj, sched.highlights)
            win.flip()

            for key, rt_s in psy_event.getKeys(keyList=key_list + config.QUIT_KEYS, timeStamped=kb.clock):
                if key in config.QUIT_KEYS:
                    sched.quit()
                    break
                outcome = sched.respond(config.RESPONSE_KEYS[key])
                if outcome is not None:
                    logging.data(f"Key {key}  rt={rt_s:.3f} s  {outcome}")

    trial_writer.close()
    return sched.summary


def run() -> None:
    # Disable pyglet event checking in background threads (prevents macOS crash)
    from psychopy import core
    core.checkPygletDuringWait = False

    from dataclasses import replace
    from datetime import datetime
    import json
    from pathlib import Path

    from psychopy import event as psy_event, logging
    from psychopy.hardware import keyboard
    from rich.console import Console

    from nback import adaptation, display, recorder, session
    from nback.config import ConfigurationError

    rcon = Console(stderr=True)

    data_dir = Path("data")
    thresholds_path = data_dir / "thresholds.json"
    history = recorder.HistoryStore(data_dir / "history.csv")

    # ── INITIALISE SESSION ───────────────────────────────────────────────────
    thresholds = recorder.load_thresholds(thresholds_path)
    session_info, session_cfg = session.show_dialog(thresholds)
    session_time = datetime.now()

    if session_info.mode == "history":
        print_history(rcon, history)
        core.quit()

    try:
        session_cfg.validate()
    except ConfigurationError as exc:
        rcon.print(f"[bold red]Invalid configuration:[/bold red] {exc}")
        core.quit()

    win_res, win = session.setup_screen()
    measured_fps = win.getActualFrameRate()
    frame_rate = measured_fps if (measured_fps is not None and measured_fps < 200) else 60.0

    # ── LOGGING ──────────────────────────────────────────────────────────────
    run_dir = session.make_run_dir(data_dir, session_info, session_time)
    logging.LogFile(str(run_dir / "experiment.log"), level=logging.EXP)
    logging.console.setLevel(logging.WARNING)  # rich handles terminal output

    rcon.print(
        f"[bold]Session:[/bold] subject=[cyan]{session_info.subject_id}[/cyan]  "
        f"mode=[cyan]{session_info.mode}[/cyan]  N=[cyan]{session_cfg.n_level}[/cyan]  "
        f"modalities=[cyan]{','.join(m.value for m in session_cfg.active_modalities)}[/cyan]"
    )
    rcon.print(f"[bold]Frame rate:[/bold] {frame_rate:.1f} Hz")
    logging.exp(f"Session: subject={session_info.subject_id}  mode={session_info.mode}")
    logging.exp(f"Frame rate: {frame_rate:.1f} Hz")

    stimuli_obj = display.build_stimuli(
        win, session_cfg.grid_rows, session_cfg.grid_cols, session_cfg.active_modalities,
    )
    recorder.write_manifest(run_dir, session_info, session_cfg, session_time, frame_rate)

    # ── KEYBOARD ─────────────────────────────────────────────────────────────
    kb = keyboard.Keyboard()

    win.mouseVisible = False

    # ── CALIBRATION ──────────────────────────────────────────────────────────
    if session_info.mode == "calibrate" or session_cfg.calibration_enabled:
        if session_info.show_instructions:
            session.display_instructions(win, stimuli_obj, session.CALIBRATION_INSTRUCTIONS)
        thresholds = run_calibration(win, stimuli_obj, session_cfg, session_info, rcon, kb)
        recorder.save_thresholds(thresholds_path, thresholds)
        session_cfg = replace(session_cfg, thresholds=thresholds)

    # ── TRAINING ─────────────────────────────────────────────────────────────
    if session_info.mode == "train":
        if session_info.show_instructions:
            session.display_instructions(win, stimuli_obj, session.INSTRUCTIONS)
        summary = run_training(win, stimuli_obj, session_cfg, session_info, run_dir, rcon, kb)

        record = recorder.build_performance_record(session_cfg, summary, session_time)
        if record is None:
            rcon.print("[bold yellow]Session aborted:[/bold yellow] no record saved")
        else:
            history.append(record)
            with open(run_dir / "performance.json", "w") as f:
                json.dump(recorder.record_to_dict(record), f, indent=2)
            adapted = adaptation.adapt_thresholds(
                session_cfg.thresholds, record, session_cfg.adaptation_policy,
            )
            recorder.save_thresholds(thresholds_path, adapted)
            rcon.print(
                f"\n[bold]Session complete:[/bold] accuracy [cyan]{record.accuracy * 100:.0f}%[/cyan] "
                f"({record.accuracy_formula})  hits={record.score.total_hits}  "
                f"misses={record.score.total_misses}  false alarms={record.score.total_false_alarms}  "
                f"duration={record.duration_ms / 1000:.1f} s"
            )

    # ── END SCREEN ───────────────────────────────────────────────────────────
    stimuli_obj.message.text = "Thank you!"
    stimuli_obj.message.draw()
    win.flip()
    psy_event.waitKeys(keyList=["space", "escape"])

    # ── CLEANUP ──────────────────────────────────────────────────────────────
    logging.flush()
    win.close()
    core.quit()


if __name__ == "__main__":
    run()
