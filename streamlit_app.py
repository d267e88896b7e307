#!/usr/bin/env python3
"""
Streamlit front-end for the 5-stage pipeline hazard simulator.

Run with:
    streamlit run streamlit_app.py
"""
from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional

import altair as alt
import pandas as pd
import streamlit as st

from pipeline_core import (
    PIPELINE_STAGES,
    SAMPLE_PROGRAM_TEXT,
    CycleRecord,
    ForwardSource,
    HazardType,
    Instruction,
    InstructionGenerator,
    InstructionType,
    PipelineSimulator,
    PipelineStats,
    SimulationOptions,
    count_potential_hazards,
    format_instruction,
    parse_program,
)

logger = logging.getLogger(__name__)

EMPTY_STAGE = "-"
STAGE_COLORS = ["#5bc0de", "#9b59b6", "#f0ad4e", "#5cb85c", "#337ab7"]
AUTO_INJECT_PROBABILITY = 0.3
AUTO_INJECT_MAX_LIVE = 6

# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

def init_state() -> None:
    if "options" not in st.session_state:
        st.session_state["options"] = SimulationOptions()
    if "generator" not in st.session_state:
        st.session_state["generator"] = InstructionGenerator()
    if "program_text" not in st.session_state:
        st.session_state["program_text"] = SAMPLE_PROGRAM_TEXT.strip()
    if "program" not in st.session_state:
        st.session_state["program"] = parse_program(
            st.session_state["program_text"], st.session_state["generator"]
        )
    if "simulator" not in st.session_state:
        simulator = PipelineSimulator(st.session_state["options"])
        simulator.load_program(st.session_state["program"])
        st.session_state["simulator"] = simulator
    if "is_running" not in st.session_state:
        st.session_state["is_running"] = False
    if "auto_speed" not in st.session_state:
        st.session_state["auto_speed"] = 1.0
    if "inject_random" not in st.session_state:
        st.session_state["inject_random"] = False


def replace_program(program_text: str) -> None:
    generator: InstructionGenerator = st.session_state["generator"]
    generator.reset()
    st.session_state["program_text"] = program_text
    st.session_state["program"] = parse_program(program_text, generator)
    restart_simulator()


def restart_simulator() -> None:
    simulator: PipelineSimulator = st.session_state["simulator"]
    simulator.reset()
    simulator.set_forwarding(st.session_state["options"].forwarding)
    simulator.load_program(st.session_state["program"])
    st.session_state["is_running"] = False


def append_random_instruction(sim: PipelineSimulator) -> Instruction:
    instr = st.session_state["generator"].random_instruction()
    st.session_state["program"].append(instr)
    sim.add_instruction(instr)
    logger.info("Added %s: %s", instr.label, format_instruction(instr))
    return instr

# UI rendering
def render_header(sim: PipelineSimulator) -> None:
    st.title("Pipeline Hazard Simulator")
    st.caption("Classic IF / ID / EX / MEM / WB pipeline with hazard detection and forwarding.")
    stats = sim.get_stats()
    col1, col2, col3, col4, col5 = st.columns(5)
    col1.metric("Cycle", stats.total_cycles)
    col2.metric("Completed", stats.instructions_completed)
    col3.metric("IPC", f"{stats.ipc:.2f}")
    col4.metric("Hazards", stats.hazards_detected)
    col5.metric("Bubbles", stats.bubbles_inserted)

def render_current_status(sim: PipelineSimulator) -> None:
    """Display what the last cycle did."""
    history = sim.get_cycle_history()
    if not history:
        return

    st.subheader("Current Cycle Status")
    last = history[-1]
    col1, col2 = st.columns(2)
    with col1:
        st.info(f"**Forwarding:** {'enabled' if sim.forwarding_enabled else 'disabled'}")
    with col2:
        if last.stalled:
            label = "LOAD-USE" if last.hazard_type == HazardType.LOAD_USE else "RAW"
            st.error(f"🚫 **{label} HAZARD**: instruction I{last.id_stage} stalled in ID, bubble injected")
        else:
            st.success("✓ No stall this cycle")

    lines = describe_cycle(last)
    if lines:
        st.markdown("**Last Cycle Events:**")
        for line in lines:
            st.markdown(f"- {line}")

def render_instruction_editor(sim: PipelineSimulator) -> None:
    st.subheader("Instruction Input")
    st.caption("Syntax: `ADD R1, R2, R3` | `LOAD R4, MEM[R5]` | `STORE R3, MEM[R5]` | `BRANCH R3`")

    editor_col, buttons_col = st.columns([4, 1])
    with editor_col:
        text = st.text_area(
            "Program",
            value=st.session_state["program_text"],
            height=180,
            label_visibility="collapsed",
        )
    with buttons_col:
        st.markdown("**Program Actions**")
        if st.button("Apply", use_container_width=True, type="primary"):
            try:
                parse_program(text)
            except ValueError as exc:
                st.error(f"Failed to parse instructions: {exc}")
            else:
                replace_program(text.strip())
                st.rerun()
        if st.button("Load Example", use_container_width=True):
            replace_program(SAMPLE_PROGRAM_TEXT.strip())
            st.rerun()
        kind = st.selectbox(
            "Operation",
            [t.value for t in InstructionType],
            label_visibility="collapsed",
        )
        if st.button("Add", use_container_width=True):
            instr = st.session_state["generator"].create(InstructionType(kind))
            st.session_state["program"].append(instr)
            sim.add_instruction(instr)
            st.rerun()
        if st.button("Add Random", use_container_width=True):
            append_random_instruction(sim)
            st.rerun()

    potential = count_potential_hazards(st.session_state["program"])
    if potential:
        st.warning(f"⚠️ {potential} adjacent register dependencies in the program")

def render_options() -> None:
    """Render forwarding and cycle ceiling configuration."""
    with st.expander("⚙️ Simulation Options", expanded=False):
        options: SimulationOptions = st.session_state["options"]
        col1, col2 = st.columns(2)
        with col1:
            forwarding = st.toggle("Data forwarding", value=options.forwarding, key="forwarding_toggle")
            st.caption("Forwarding removes RAW stalls; load-use hazards still stall once.")
        with col2:
            max_cycles = st.number_input(
                "Max cycles",
                min_value=1,
                max_value=100000,
                value=options.max_cycles,
                step=10,
                key="max_cycles_input",
            )
        st.session_state["inject_random"] = st.checkbox(
            "Inject random instructions while auto-running",
            value=st.session_state["inject_random"],
        )

        if forwarding != options.forwarding:
            options.forwarding = forwarding
            st.session_state["simulator"].set_forwarding(forwarding)
            logger.info("Forwarding %s", "enabled" if forwarding else "disabled")
        if int(max_cycles) != options.max_cycles:
            options.max_cycles = int(max_cycles)

def render_controls(sim: PipelineSimulator) -> None:
    st.subheader("Execution Controls")

    col1, col2, col3, col4, col5, col6 = st.columns([1, 1, 1.2, 1, 1.2, 1])

    # Start/Stop button
    if st.session_state["is_running"]:
        if col1.button("⏸ Stop", use_container_width=True, type="primary"):
            st.session_state["is_running"] = False
            st.rerun()
    else:
        if col1.button("▶️ Start", use_container_width=True, type="primary"):
            if not sim.is_finished() or st.session_state["inject_random"]:
                st.session_state["is_running"] = True
                st.rerun()

    if col2.button("Step", use_container_width=True, disabled=st.session_state["is_running"]):
        sim.advance_cycle()
        st.rerun()

    step_count = col3.number_input("Run cycles", min_value=1, max_value=200, value=10, step=1, label_visibility="collapsed", disabled=st.session_state["is_running"])
    col3.caption("Cycles / burst")
    if col4.button(f"Run ×{int(step_count)}", use_container_width=True, disabled=st.session_state["is_running"]):
        for _ in range(int(step_count)):
            if sim.is_finished():
                break
            sim.advance_cycle()
        st.rerun()

    if col5.button("Run to End", use_container_width=True, disabled=st.session_state["is_running"]):
        options: SimulationOptions = st.session_state["options"]
        sim.simulate(st.session_state["program"], options.forwarding, options.max_cycles)
        st.rerun()

    if col6.button("Reset", type="secondary", use_container_width=True, disabled=st.session_state["is_running"]):
        restart_simulator()
        st.rerun()

    if st.session_state["is_running"]:
        speed = st.slider(
            "Simulation Speed",
            min_value=0.1,
            max_value=2.0,
            value=st.session_state["auto_speed"],
            step=0.1,
            format="%.1fx",
            help="Control how fast the simulation runs"
        )
        st.session_state["auto_speed"] = speed

def render_tables(sim: PipelineSimulator) -> None:
    instructions_df = pd.DataFrame([instruction_row(instr) for instr in sim.get_instructions()])
    latch_df = pd.DataFrame(latch_rows(sim))
    stats_df = pd.DataFrame(stats_rows(sim.get_stats()))
    history_df = history_frame(sim.get_cycle_history())

    st.subheader("Machine State")
    top_left, top_right = st.columns((3, 2))
    with top_left:
        st.markdown("#### Live Instructions")
        st.dataframe(instructions_df, use_container_width=True, hide_index=True, height=260)
    with top_right:
        st.markdown("#### Pipeline Registers")
        st.dataframe(latch_df, use_container_width=True, hide_index=True, height=180)
        st.markdown("#### Statistics")
        st.dataframe(stats_df, use_container_width=True, hide_index=True)

    st.markdown("#### Cycle History")
    st.dataframe(history_df, use_container_width=True, hide_index=True, height=280)

def render_pipeline_chart(sim: PipelineSimulator) -> None:
    st.subheader("Pipeline Diagram")

    data = occupancy_rows(sim.get_cycle_history())
    if not data:
        st.info("Step the simulation to see the pipeline diagram.")
        return

    df = pd.DataFrame(data)
    stages = [stage.value for stage in PIPELINE_STAGES]

    chart = alt.Chart(df).mark_rect(stroke="white").encode(
        x=alt.X("Cycle:O", title="Cycle"),
        y=alt.Y("Instruction:N", sort=None),
        color=alt.Color("Stage:N", scale=alt.Scale(domain=stages, range=STAGE_COLORS)),
        tooltip=["Instruction", "Stage", "Cycle", "Stalled"],
    ).properties(height=300)
    text = alt.Chart(df).mark_text(color="white").encode(
        x="Cycle:O",
        y=alt.Y("Instruction:N", sort=None),
        text="Stage:N",
    )

    st.altair_chart(chart + text, use_container_width=True)

# Serialization helpers
def instruction_row(instr: Instruction) -> Dict[str, str]:
    return {
        "ID": instr.label,
        "Op": instr.op.value,
        "Operation": format_instruction(instr),
        "Stage": instr.stage.value,
        "Cycle": str(instr.cycle),
        "Stalled": "Yes" if instr.is_stalled else "",
        "Hazard": instr.hazard_type.value if instr.has_hazard else "",
    }

def latch_rows(sim: PipelineSimulator) -> List[Dict[str, str]]:
    rows: List[Dict[str, str]] = []
    for name, latch in sim.latches().items():
        instr = sim.latch_instruction(name)
        rows.append({
            "Latch": name,
            "Valid": "Yes" if latch.valid else "No",
            "Instruction": instr.label if instr else "",
            "MemRead": "Yes" if latch.mem_read else "",
            "RegWrite": "Yes" if latch.reg_write else "",
            "Rd": latch.rd or "",
        })
    return rows

def stats_rows(stats: PipelineStats) -> List[Dict[str, str]]:
    return [
        {"Metric": "Cycles", "Value": str(stats.total_cycles)},
        {"Metric": "Completed", "Value": str(stats.instructions_completed)},
        {"Metric": "In pipeline", "Value": str(stats.instructions_in_pipeline)},
        {"Metric": "IPC", "Value": f"{stats.ipc:.3f}"},
        {"Metric": "Hazards", "Value": str(stats.hazards_detected)},
        {"Metric": "RAW / load-use", "Value": f"{stats.raw_hazards} / {stats.load_use_hazards}"},
        {"Metric": "Stalls", "Value": str(stats.stalls_inserted)},
        {"Metric": "Bubbles", "Value": str(stats.bubbles_inserted)},
        {"Metric": "Forwards", "Value": str(stats.forwards)},
    ]

def _stage_label(instr_id: Optional[int]) -> str:
    return EMPTY_STAGE if instr_id is None else f"I{instr_id}"

def history_frame(history: List[CycleRecord]) -> pd.DataFrame:
    columns = ["Cycle", "IF", "ID", "EX", "MEM", "WB", "Stall", "Bubble", "Hazard", "Fwd A", "Fwd B"]
    rows = []
    for record in history:
        row = {"Cycle": record.cycle}
        for stage, instr_id in record.stages.items():
            row[stage] = _stage_label(instr_id)
        row["Stall"] = record.stalled
        row["Bubble"] = record.bubble
        row["Hazard"] = record.hazard_type.value
        row["Fwd A"] = record.forward_a.value
        row["Fwd B"] = record.forward_b.value
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)

def occupancy_rows(history: List[CycleRecord]) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for record in history:
        for stage, instr_id in record.stages.items():
            if instr_id is None:
                continue
            rows.append({
                "Cycle": record.cycle,
                "Instruction": _stage_label(instr_id),
                "Stage": stage,
                "Stalled": record.stalled and stage in ("IF", "ID"),
            })
    return rows

def describe_cycle(record: CycleRecord) -> List[str]:
    lines: List[str] = []
    if record.stalled:
        lines.append(f"⚠️ Stalled: I{record.id_stage} held in ID ({record.hazard_type.value})")
    if record.bubble:
        lines.append("🫧 Bubble injected into ID/EX")
    for operand, source in (("A", record.forward_a), ("B", record.forward_b)):
        if source != ForwardSource.NONE:
            lines.append(f"↪️ Operand {operand} forwarded from {source.value.replace('_', '/')}")
    if record.wb_stage is not None:
        lines.append(f"📤 Writing back: I{record.wb_stage}")
    return lines

def main() -> None:
    st.set_page_config(page_title="Pipeline Hazard Simulator", layout="wide")
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    init_state()
    simulator: PipelineSimulator = st.session_state["simulator"]

    render_header(simulator)
    with st.container():
        render_instruction_editor(simulator)
    with st.container():
        render_options()
    with st.container():
        render_controls(simulator)
    with st.container():
        render_current_status(simulator)
    with st.container():
        render_tables(simulator)
    with st.container():
        render_pipeline_chart(simulator)

    options: SimulationOptions = st.session_state["options"]
    if st.session_state["is_running"] and simulator.cycle >= options.max_cycles:
        st.session_state["is_running"] = False
        st.rerun()
    elif st.session_state["is_running"] and (not simulator.is_finished() or st.session_state["inject_random"]):
        delay_ms = int(1000 / st.session_state["auto_speed"])
        live = simulator.get_stats().instructions_in_pipeline
        generator: InstructionGenerator = st.session_state["generator"]
        if st.session_state["inject_random"] and live < AUTO_INJECT_MAX_LIVE and generator.rng.random() < AUTO_INJECT_PROBABILITY:
            append_random_instruction(simulator)
        simulator.advance_cycle()
        time.sleep(delay_ms / 1000.0)
        st.rerun()
    elif st.session_state["is_running"]:
        st.session_state["is_running"] = False
        st.rerun()

if __name__ == "__main__":
    main()
