import dataclasses
import logging

import pytest

from pipeline_core import (
    ForwardSource,
    HazardType,
    Instruction,
    InstructionGenerator,
    InstructionType,
    PipelineSimulator,
    SimulationOptions,
    Stage,
    build_sample_program,
    count_potential_hazards,
    format_instruction,
    parse_program,
)

STAGE_ORDER = [Stage.IF, Stage.ID, Stage.EX, Stage.MEM, Stage.WB, Stage.COMPLETE]


@pytest.fixture
def gen():
    return InstructionGenerator(seed=7)


@pytest.fixture
def sim():
    return PipelineSimulator()


def add_sub(gen):
    return [
        gen.build(InstructionType.ADD, "R1", "R2", "R3"),
        gen.build(InstructionType.SUB, "R4", "R1", "R5"),
    ]


def load_add(gen):
    return [
        gen.build(InstructionType.LOAD, "R1", "R2"),
        gen.build(InstructionType.ADD, "R3", "R1", "R4"),
    ]


def step(sim, cycles):
    for _ in range(cycles):
        sim.advance_cycle()


def by_id(sim, instr_id):
    return next(i for i in sim.get_instructions() if i.id == instr_id)


# Instruction generator -----------------------------------------------------

def test_generator_ids_increase_and_reset(gen):
    ids = [gen.random_instruction().id for _ in range(5)]
    assert ids == [0, 1, 2, 3, 4]
    gen.reset()
    assert gen.create(InstructionType.ADD).id == 0


@pytest.mark.parametrize("kind", list(InstructionType))
def test_generator_populates_operands_for_kind(gen, kind):
    for _ in range(20):
        instr = gen.create(kind)
        assert instr.is_well_formed
        assert instr.stage == Stage.IF
        assert instr.cycle == 0
        for reg in (instr.dest, instr.src1, instr.src2):
            assert reg is None or reg in gen.registers


def test_generator_is_reproducible_with_seed():
    first = InstructionGenerator(seed=42)
    second = InstructionGenerator(seed=42)
    a = [first.random_instruction() for _ in range(10)]
    b = [second.random_instruction() for _ in range(10)]
    assert a == b


def test_generator_rejects_empty_register_file():
    with pytest.raises(ValueError):
        InstructionGenerator(register_count=0)


# Engine basics ---------------------------------------------------------------

def test_reset_gives_zero_stats(sim, gen):
    sim.simulate(add_sub(gen))
    sim.reset()
    stats = sim.get_stats()
    assert stats.total_cycles == 0
    assert stats.instructions_completed == 0
    assert stats.hazards_detected == 0
    assert stats.stalls_inserted == 0
    assert stats.instructions_in_pipeline == 0
    assert stats.ipc == 0
    assert sim.get_cycle_history() == []
    assert sim.get_instructions() == []


def test_empty_program_simulates_to_nothing(sim):
    history = sim.simulate([])
    stats = sim.get_stats()
    assert history == []
    assert stats.total_cycles == 0
    assert stats.instructions_completed == 0
    assert stats.ipc == 0


def test_advance_with_nothing_live_records_empty_row(sim):
    sim.advance_cycle()
    history = sim.get_cycle_history()
    assert sim.get_stats().total_cycles == 1
    assert len(history) == 1
    assert history[0].cycle == 1
    assert history[0].is_empty
    assert not history[0].stalled


def test_single_instruction_walks_every_stage(sim, gen):
    instr = gen.build(InstructionType.ADD, "R1", "R2", "R3")
    sim.add_instruction(instr)
    seen = []
    for _ in range(6):
        sim.advance_cycle()
        seen.append(by_id(sim, instr.id).stage)
    assert seen == STAGE_ORDER
    assert by_id(sim, instr.id).cycle == 6

    # visible for exactly one cycle after completion
    sim.advance_cycle()
    assert sim.get_instructions() == []
    assert sim.is_finished()
    stats = sim.get_stats()
    assert stats.total_cycles == 7
    assert stats.instructions_completed == 1
    assert stats.ipc == pytest.approx(1 / 7)


def test_history_shows_program_order_occupancy(sim, gen):
    program = [gen.build(InstructionType.BRANCH, None, "R1") for _ in range(3)]
    history = sim.simulate(program)
    assert [r.cycle for r in history] == list(range(1, len(history) + 1))
    assert history[2].stages == {"IF": 2, "ID": 1, "EX": 0, "MEM": None, "WB": None}
    assert history[4].stages == {"IF": None, "ID": None, "EX": 2, "MEM": 1, "WB": 0}
    assert len(history) == 6 + len(program)


def test_history_records_are_frozen(sim, gen):
    history = sim.simulate(add_sub(gen))
    with pytest.raises(dataclasses.FrozenInstanceError):
        history[0].stalled = True


def test_submitted_instruction_is_copied(sim, gen):
    instr = gen.build(InstructionType.ADD, "R1", "R2", "R3")
    sim.add_instruction(instr)
    instr.dest = "R7"
    sim.advance_cycle()
    assert sim.get_instructions()[0].dest == "R1"
    assert instr.stage == Stage.IF


def test_get_instructions_returns_snapshots(sim, gen):
    sim.load_program(add_sub(gen))
    sim.advance_cycle()
    snapshot = sim.get_instructions()
    snapshot[0].stage = Stage.WB
    assert sim.get_instructions()[0].stage == Stage.IF


def test_latches_hold_control_bits(sim, gen):
    sim.load_program(load_add(gen))
    step(sim, 3)
    latches = sim.latches()
    assert latches["ID/EX"].valid
    assert latches["ID/EX"].mem_read
    assert latches["ID/EX"].rd == "R1"
    assert sim.latch_instruction("IF/ID").op == InstructionType.ADD
    assert sim.latch_instruction("EX/MEM") is None
    with pytest.raises(KeyError):
        sim.latch_instruction("WB/IF")


# Hazard detection --------------------------------------------------------------

def test_raw_hazard_without_forwarding_stalls_once(sim, gen):
    add, sub = add_sub(gen)
    history = sim.simulate([add, sub], forwarding=False)
    stats = sim.get_stats()

    assert stats.hazards_detected == 1
    assert stats.raw_hazards == 1
    assert stats.load_use_hazards == 0
    assert stats.stalls_inserted == 1
    assert stats.instructions_completed == 2
    assert stats.total_cycles == 11
    # held in ID until ADD has written back
    assert stats.bubbles_inserted == 3

    stall = history[3]
    assert stall.stalled and stall.bubble
    assert stall.hazard_type == HazardType.RAW
    assert stall.id_stage == sub.id
    assert stall.mem_stage == add.id
    assert stall.ex_stage is None
    assert [r.stalled for r in history].count(True) == 3


def test_stalled_instruction_flags_and_control_signals(sim, gen):
    add, sub = add_sub(gen)
    sim.set_forwarding(False)
    sim.load_program([add, sub])
    step(sim, 4)

    assert not sim.control.pc_write
    assert not sim.control.ifid_write
    assert sim.control.idex_zero
    stalled = by_id(sim, sub.id)
    assert stalled.stage == Stage.ID
    assert stalled.is_stalled and stalled.has_hazard
    assert stalled.hazard_type == HazardType.RAW

    step(sim, 3)
    assert sim.control.pc_write and sim.control.ifid_write
    assert not sim.control.idex_zero
    resumed = by_id(sim, sub.id)
    assert resumed.stage == Stage.EX
    assert not resumed.is_stalled
    assert resumed.hazard_type == HazardType.NONE


def test_raw_hazard_with_forwarding_does_not_stall(sim, gen):
    history = sim.simulate(add_sub(gen), forwarding=True)
    stats = sim.get_stats()
    assert stats.hazards_detected == 0
    assert stats.bubbles_inserted == 0
    assert stats.total_cycles == 8
    assert not any(r.stalled for r in history)
    assert history[4].forward_a == ForwardSource.EX_MEM
    assert history[4].forward_b == ForwardSource.NONE
    assert stats.forwards == 1


@pytest.mark.parametrize("forwarding", [True, False])
def test_load_use_stalls_exactly_once(sim, gen, forwarding):
    load, add = load_add(gen)
    history = sim.simulate([load, add], forwarding=forwarding)
    stats = sim.get_stats()
    assert stats.load_use_hazards == 1
    assert stats.hazards_detected == 1
    assert stats.instructions_completed == 2
    assert history[3].stalled
    assert history[3].hazard_type == HazardType.LOAD_USE
    assert history[3].id_stage == add.id
    assert history[3].mem_stage == load.id


def test_load_use_with_forwarding_resumes_from_mem_wb(sim, gen):
    history = sim.simulate(load_add(gen), forwarding=True)
    assert [r.stalled for r in history].count(True) == 1
    assert history[5].forward_a == ForwardSource.MEM_WB
    assert sim.get_stats().total_cycles == 9


def test_load_use_without_forwarding_waits_for_writeback(sim, gen):
    history = sim.simulate(load_add(gen), forwarding=False)
    stats = sim.get_stats()
    assert stats.raw_hazards == 0
    assert stats.bubbles_inserted == 3
    assert stats.total_cycles == 11
    assert [r.hazard_type for r in history[3:6]] == [
        HazardType.LOAD_USE,
        HazardType.RAW,
        HazardType.RAW,
    ]


@pytest.mark.parametrize("forwarding", [True, False])
def test_zero_register_never_creates_hazard(sim, gen, forwarding):
    program = [
        gen.build(InstructionType.LOAD, "R0", "R1"),
        gen.build(InstructionType.ADD, "R3", "R0", "R0"),
    ]
    history = sim.simulate(program, forwarding=forwarding)
    assert sim.get_stats().hazards_detected == 0
    assert all(r.forward_a == ForwardSource.NONE for r in history)


def test_independent_instructions_never_stall(sim, gen):
    program = [
        gen.build(InstructionType.ADD, "R1", "R2", "R3"),
        gen.build(InstructionType.SUB, "R4", "R5", "R6"),
        gen.build(InstructionType.STORE, None, "R2", "R3"),
    ]
    sim.simulate(program, forwarding=False)
    stats = sim.get_stats()
    assert stats.hazards_detected == 0
    assert stats.total_cycles == 6 + len(program)


def test_forwarding_toggle_applies_to_next_cycle(sim, gen):
    sim.load_program(add_sub(gen))
    step(sim, 3)
    sim.set_forwarding(False)
    sim.advance_cycle()
    assert sim.get_cycle_history()[-1].stalled


# Forwarding ------------------------------------------------------------------

def test_forwarding_prefers_nearest_producer(sim, gen):
    program = [
        gen.build(InstructionType.ADD, "R1", "R2", "R3"),
        gen.build(InstructionType.SUB, "R1", "R4", "R5"),
        gen.build(InstructionType.MUL, "R6", "R1", "R7"),
    ]
    history = sim.simulate(program, forwarding=True)
    # decided while MUL sat in ID/EX; the row shows it after moving to MEM
    assert history[5].mem_stage == program[2].id
    assert history[5].forward_a == ForwardSource.EX_MEM
    assert history[5].forward_b == ForwardSource.NONE


def test_forwarding_from_mem_wb(sim, gen):
    program = [
        gen.build(InstructionType.ADD, "R1", "R2", "R3"),
        gen.build(InstructionType.BRANCH, None, "R4"),
        gen.build(InstructionType.SUB, "R5", "R6", "R1"),
    ]
    history = sim.simulate(program, forwarding=True)
    assert history[5].forward_a == ForwardSource.NONE
    assert history[5].forward_b == ForwardSource.MEM_WB


def test_forwarding_disabled_reports_none(sim, gen):
    history = sim.simulate(add_sub(gen), forwarding=False)
    assert all(r.forward_a == ForwardSource.NONE for r in history)
    assert sim.get_stats().forwards == 0


# Simulation runs ---------------------------------------------------------------

def test_simulate_stops_at_ceiling(sim, gen, caplog):
    with caplog.at_level(logging.WARNING, logger="pipeline_core"):
        history = sim.simulate(add_sub(gen), max_cycles=3)
    assert len(history) == 3
    assert not sim.is_finished()
    assert "ceiling" in caplog.text


def test_simulate_rejects_negative_ceiling(sim, gen):
    with pytest.raises(ValueError):
        sim.simulate(add_sub(gen), max_cycles=-1)


def test_simulate_uses_constructor_options(gen):
    sim = PipelineSimulator(SimulationOptions(forwarding=False, max_cycles=5))
    history = sim.simulate(add_sub(gen))
    assert len(history) == 5
    assert sim.get_stats().hazards_detected == 1


def test_reset_keeps_forwarding_setting(sim):
    sim.set_forwarding(False)
    sim.reset()
    assert sim.forwarding_enabled is False


@pytest.mark.parametrize("forwarding", [True, False])
@pytest.mark.parametrize("seed", range(10))
def test_random_programs_complete_with_sane_ipc(seed, forwarding):
    gen = InstructionGenerator(seed=seed)
    program = [gen.random_instruction() for _ in range(12)]
    sim = PipelineSimulator()
    sim.simulate(program, forwarding=forwarding)
    stats = sim.get_stats()
    assert sim.is_finished()
    assert stats.instructions_completed == len(program)
    assert 0 < stats.ipc <= 1
    assert stats.ipc == stats.instructions_completed / stats.total_cycles


@pytest.mark.parametrize("seed", range(5))
def test_stages_never_regress(seed):
    gen = InstructionGenerator(seed=seed)
    sim = PipelineSimulator(SimulationOptions(forwarding=False))
    sim.load_program([gen.random_instruction() for _ in range(8)])
    last = {}
    while not sim.is_finished():
        sim.advance_cycle()
        for instr in sim.get_instructions():
            index = STAGE_ORDER.index(instr.stage)
            assert index >= last.get(instr.id, 0)
            last[instr.id] = index


def test_forwarding_never_costs_more_cycles():
    gen = InstructionGenerator(seed=3)
    program = [gen.random_instruction() for _ in range(15)]
    with_fwd = PipelineSimulator()
    with_fwd.simulate(program, forwarding=True)
    without = PipelineSimulator()
    without.simulate(program, forwarding=False)
    assert with_fwd.get_stats().total_cycles <= without.get_stats().total_cycles


def test_malformed_instruction_logs_warning(sim, caplog):
    bad = Instruction(id=99, op=InstructionType.STORE, dest="R1", src1="R2")
    with caplog.at_level(logging.WARNING, logger="pipeline_core"):
        sim.add_instruction(bad)
    assert "I99" in caplog.text
    assert len(sim.get_instructions()) == 1


# Program text ------------------------------------------------------------------

def test_parse_program_reads_every_kind():
    program = parse_program(
        """
        # comment line
        ADD R1, R2, R3
        sub r4 r1 r5   # trailing comment
        LOAD R6, MEM[R1]
        STORE R6, R2
        BRANCH R6
        MUL R7, R6, R0
        """
    )
    assert [i.op for i in program] == [
        InstructionType.ADD,
        InstructionType.SUB,
        InstructionType.LOAD,
        InstructionType.STORE,
        InstructionType.BRANCH,
        InstructionType.MUL,
    ]
    assert [i.id for i in program] == list(range(6))
    assert program[1].sources == ("R1", "R5")
    assert (program[2].dest, program[2].src1, program[2].src2) == ("R6", "R1", None)
    assert (program[3].dest, program[3].src1, program[3].src2) == (None, "R6", "R2")
    assert all(i.is_well_formed for i in program)


@pytest.mark.parametrize(
    "text, message",
    [
        ("NOP R1", "Line 1: unsupported opcode"),
        ("ADD R1, R2\n", "Line 1: missing operand"),
        ("BRANCH R1\nLOAD R9, R1", "Line 2: unknown register"),
        ("STORE R1, MEM[X]", "unknown register"),
    ],
)
def test_parse_program_errors(text, message):
    with pytest.raises(ValueError, match=message):
        parse_program(text)


def test_parse_program_continues_generator_ids(gen):
    gen.create(InstructionType.ADD)
    program = parse_program("ADD R1, R2, R3", gen)
    assert program[0].id == 1


def test_sample_program_runs_to_completion(sim):
    program = build_sample_program()
    sim.simulate(program, forwarding=True)
    stats = sim.get_stats()
    assert stats.instructions_completed == len(program)
    assert stats.load_use_hazards == 1
    assert stats.raw_hazards == 0


def test_format_instruction(gen):
    assert format_instruction(gen.build(InstructionType.MUL, "R1", "R2", "R3")) == "R1 = R2 * R3"
    assert format_instruction(gen.build(InstructionType.LOAD, "R1", "R2")) == "R1 = MEM[R2]"
    assert format_instruction(gen.build(InstructionType.STORE, None, "R1", "R2")) == "MEM[R2] = R1"
    assert format_instruction(gen.build(InstructionType.BRANCH, None, "R4")) == "BRANCH if R4"


def test_count_potential_hazards(gen):
    program = add_sub(gen) + [
        gen.build(InstructionType.ADD, "R0", "R4", "R2"),
        gen.build(InstructionType.SUB, "R5", "R0", "R1"),
    ]
    # ADD->SUB and SUB(R4)->ADD count; the R0 write does not
    assert count_potential_hazards(program) == 2
    assert count_potential_hazards([]) == 0
