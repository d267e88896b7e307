"""
Core 5-stage pipeline models and utilities shared between the GUI and tests.
"""
from __future__ import annotations

import copy
import logging
import random
import re
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Tuple

__all__ = [
    "InstructionType",
    "Stage",
    "HazardType",
    "ForwardSource",
    "Instruction",
    "InstructionGenerator",
    "PipelineRegister",
    "ControlSignals",
    "ForwardingDecision",
    "PipelineStats",
    "CycleRecord",
    "SimulationOptions",
    "PipelineSimulator",
    "PIPELINE_STAGES",
    "ZERO_REGISTER",
    "SAMPLE_PROGRAM_TEXT",
    "parse_program",
    "build_sample_program",
    "format_instruction",
    "count_potential_hazards",
]

logger = logging.getLogger(__name__)

ZERO_REGISTER = "R0"
REGISTER_COUNT = 8
DEFAULT_MAX_CYCLES = 1000


class InstructionType(str, Enum):
    ADD = "ADD"
    SUB = "SUB"
    MUL = "MUL"
    LOAD = "LOAD"
    STORE = "STORE"
    BRANCH = "BRANCH"


class Stage(str, Enum):
    IF = "IF"
    ID = "ID"
    EX = "EX"
    MEM = "MEM"
    WB = "WB"
    COMPLETE = "COMPLETE"


class HazardType(str, Enum):
    NONE = "NONE"
    RAW = "RAW"
    LOAD_USE = "LOAD_USE"


class ForwardSource(str, Enum):
    NONE = "NONE"
    EX_MEM = "EX_MEM"
    MEM_WB = "MEM_WB"


ALU_TYPES = (InstructionType.ADD, InstructionType.SUB, InstructionType.MUL)
PIPELINE_STAGES = (Stage.IF, Stage.ID, Stage.EX, Stage.MEM, Stage.WB)


@dataclass
class Instruction:
    """One instruction: fixed identity and operands plus mutable progress.

    Operand slots must match the kind (see ``InstructionGenerator``); the
    engine does not validate them and hazard results for a malformed
    instruction are undefined.
    """

    id: int
    op: InstructionType
    dest: Optional[str] = None
    src1: Optional[str] = None
    src2: Optional[str] = None
    stage: Stage = Stage.IF
    cycle: int = 0
    is_stalled: bool = False
    has_hazard: bool = False
    hazard_type: HazardType = HazardType.NONE

    def clone(self) -> "Instruction":
        return copy.deepcopy(self)

    @property
    def sources(self) -> Tuple[Optional[str], Optional[str]]:
        return self.src1, self.src2

    @property
    def label(self) -> str:
        return f"I{self.id}"

    @property
    def is_well_formed(self) -> bool:
        kind = self.op
        if kind in ALU_TYPES:
            return bool(self.dest and self.src1 and self.src2)
        if kind == InstructionType.LOAD:
            return bool(self.dest and self.src1) and self.src2 is None
        if kind == InstructionType.STORE:
            return self.dest is None and bool(self.src1 and self.src2)
        return self.dest is None and bool(self.src1) and self.src2 is None

    def reads(self, register: Optional[str]) -> bool:
        return register is not None and register in self.sources

    def clear_hazard(self) -> None:
        self.is_stalled = False
        self.has_hazard = False
        self.hazard_type = HazardType.NONE


class InstructionGenerator:
    """Hands out instructions with unique, increasing ids.

    Random operands are drawn from ``R0..R{register_count - 1}``. Pass a seed
    for a reproducible sequence.
    """

    def __init__(self, seed: Optional[int] = None, register_count: int = REGISTER_COUNT) -> None:
        if register_count < 1:
            raise ValueError("register_count must be at least 1")
        self.register_count = register_count
        self.rng = random.Random(seed)
        self.next_id = 0

    def reset(self) -> None:
        self.next_id = 0

    @property
    def registers(self) -> List[str]:
        return [f"R{i}" for i in range(self.register_count)]

    def random_register(self) -> str:
        return f"R{self.rng.randrange(self.register_count)}"

    def random_kind(self) -> InstructionType:
        return self.rng.choice(list(InstructionType))

    def create(self, kind: InstructionType) -> Instruction:
        kind = InstructionType(kind)
        if kind in ALU_TYPES:
            # dest drawn first, then sources
            dest = self.random_register()
            return self.build(kind, dest, self.random_register(), self.random_register())
        if kind == InstructionType.LOAD:
            dest = self.random_register()
            return self.build(kind, dest, self.random_register())
        if kind == InstructionType.STORE:
            src1 = self.random_register()
            return self.build(kind, None, src1, self.random_register())
        return self.build(kind, None, self.random_register())

    def random_instruction(self) -> Instruction:
        return self.create(self.random_kind())

    def build(
        self,
        kind: InstructionType,
        dest: Optional[str] = None,
        src1: Optional[str] = None,
        src2: Optional[str] = None,
    ) -> Instruction:
        instr = Instruction(
            id=self.next_id,
            op=InstructionType(kind),
            dest=dest,
            src1=src1,
            src2=src2,
        )
        self.next_id += 1
        return instr


@dataclass
class PipelineRegister:
    """Latch between two stages. Holds an arena handle, never the instruction."""

    name: str
    handle: Optional[int] = None
    valid: bool = False
    mem_read: bool = False
    reg_write: bool = False
    rd: Optional[str] = None

    def load(self, handle: int, instr: Instruction) -> None:
        self.handle = handle
        self.valid = True
        self.mem_read = instr.op == InstructionType.LOAD
        self.reg_write = instr.dest is not None
        self.rd = instr.dest

    def reset(self) -> None:
        self.handle = None
        self.valid = False
        self.mem_read = False
        self.reg_write = False
        self.rd = None

    def copy_from(self, other: "PipelineRegister") -> None:
        self.handle = other.handle
        self.valid = other.valid
        self.mem_read = other.mem_read
        self.reg_write = other.reg_write
        self.rd = other.rd

    def writes(self, register: Optional[str]) -> bool:
        """True when this latch produces ``register`` and it is not R0."""
        return (
            self.valid
            and self.reg_write
            and register is not None
            and self.rd == register
            and self.rd != ZERO_REGISTER
        )


@dataclass
class ControlSignals:
    pc_write: bool = True
    ifid_write: bool = True
    idex_zero: bool = False

    def stall(self) -> None:
        self.pc_write = False
        self.ifid_write = False
        self.idex_zero = True

    @property
    def stalled(self) -> bool:
        return not self.pc_write


@dataclass
class ForwardingDecision:
    forward_a: ForwardSource = ForwardSource.NONE
    forward_b: ForwardSource = ForwardSource.NONE

    @property
    def count(self) -> int:
        return sum(1 for src in (self.forward_a, self.forward_b) if src != ForwardSource.NONE)


@dataclass
class PipelineStats:
    total_cycles: int = 0
    instructions_completed: int = 0
    instructions_in_pipeline: int = 0
    hazards_detected: int = 0
    stalls_inserted: int = 0
    raw_hazards: int = 0
    load_use_hazards: int = 0
    bubbles_inserted: int = 0
    forwards: int = 0

    @property
    def ipc(self) -> float:
        if self.total_cycles == 0:
            return 0.0
        return self.instructions_completed / self.total_cycles


@dataclass(frozen=True)
class CycleRecord:
    """Stage occupancy after one cycle; ``None`` marks an empty stage."""

    cycle: int
    if_stage: Optional[int]
    id_stage: Optional[int]
    ex_stage: Optional[int]
    mem_stage: Optional[int]
    wb_stage: Optional[int]
    stalled: bool = False
    bubble: bool = False
    hazard_type: HazardType = HazardType.NONE
    forward_a: ForwardSource = ForwardSource.NONE
    forward_b: ForwardSource = ForwardSource.NONE

    @property
    def stages(self) -> Dict[str, Optional[int]]:
        return {
            "IF": self.if_stage,
            "ID": self.id_stage,
            "EX": self.ex_stage,
            "MEM": self.mem_stage,
            "WB": self.wb_stage,
        }

    @property
    def is_empty(self) -> bool:
        return all(value is None for value in self.stages.values())


@dataclass
class SimulationOptions:
    forwarding: bool = True
    max_cycles: int = DEFAULT_MAX_CYCLES


class PipelineSimulator:
    """Cycle-by-cycle model of an in-order IF/ID/EX/MEM/WB pipeline.

    Instructions are submitted in program order and live in an arena keyed by
    an internal handle; the four latches only ever reference those handles.
    One ``advance_cycle()`` call runs hazard detection and forwarding against
    the latch contents from the end of the previous cycle, then moves every
    latch forward one stage (or injects a bubble into ID/EX on a stall).
    """

    DEFAULT_MAX_CYCLES = DEFAULT_MAX_CYCLES
    ZERO_REGISTER = ZERO_REGISTER
    REGISTER_COUNT = REGISTER_COUNT

    def __init__(self, options: Optional[SimulationOptions] = None) -> None:
        self.options = options or SimulationOptions()
        self.forwarding_enabled: bool = self.options.forwarding
        self.if_id = PipelineRegister("IF/ID")
        self.id_ex = PipelineRegister("ID/EX")
        self.ex_mem = PipelineRegister("EX/MEM")
        self.mem_wb = PipelineRegister("MEM/WB")
        self.control = ControlSignals()
        self.forwarding = ForwardingDecision()
        self.cycle: int = 0
        self._arena: Dict[int, Instruction] = {}
        self._order: List[int] = []
        self._pending: Deque[int] = deque()
        self._fetch_slot: Optional[int] = None
        self._next_handle: int = 0
        self._stats = PipelineStats()
        self._history: List[CycleRecord] = []
        self.reset()

    def reset(self) -> None:
        self.cycle = 0
        for latch in self._latches():
            latch.reset()
        self.control = ControlSignals()
        self.forwarding = ForwardingDecision()
        self._arena = {}
        self._order = []
        self._pending = deque()
        self._fetch_slot = None
        self._next_handle = 0
        self._stats = PipelineStats()
        self._history = []

    def set_forwarding(self, enabled: bool) -> None:
        self.forwarding_enabled = bool(enabled)

    def add_instruction(self, instruction: Instruction) -> None:
        """Append a copy of ``instruction`` to program order.

        Precondition: operand slots match the instruction kind. A mismatch is
        logged but not rejected.
        """
        if not instruction.is_well_formed:
            logger.warning(
                "Instruction %s (%s) has operands that do not match its kind",
                instruction.label,
                instruction.op.value,
            )
        instr = instruction.clone()
        instr.stage = Stage.IF
        instr.cycle = 0
        instr.clear_hazard()
        handle = self._next_handle
        self._next_handle += 1
        self._arena[handle] = instr
        self._order.append(handle)
        self._pending.append(handle)

    def load_program(self, instructions: Iterable[Instruction]) -> None:
        for instr in instructions:
            self.add_instruction(instr)

    def is_finished(self) -> bool:
        return not self._order

    def advance_cycle(self) -> None:
        self.cycle += 1
        self._stats.total_cycles = self.cycle

        self._detect_hazards()
        self._resolve_forwarding()

        self._retire()
        self.mem_wb.copy_from(self.ex_mem)
        self._restage(self.mem_wb, Stage.WB)
        self.ex_mem.copy_from(self.id_ex)
        self._restage(self.ex_mem, Stage.MEM)
        if self.control.ifid_write:
            self.id_ex.copy_from(self.if_id)
            moved = self._restage(self.id_ex, Stage.EX)
            if moved is not None:
                moved.clear_hazard()
        elif self.control.idex_zero:
            self.id_ex.reset()
        if self.control.pc_write:
            self._fetch()
        if self.control.idex_zero:
            self._stats.bubbles_inserted += 1

        record = self._record_cycle()
        self._history.append(record)
        self._drop_completed()

        logger.debug(
            "cycle %d IF=%s ID=%s EX=%s MEM=%s WB=%s stall=%s",
            record.cycle,
            record.if_stage,
            record.id_stage,
            record.ex_stage,
            record.mem_stage,
            record.wb_stage,
            record.stalled,
        )

    def simulate(
        self,
        instructions: Iterable[Instruction],
        forwarding: Optional[bool] = None,
        max_cycles: Optional[int] = None,
    ) -> List[CycleRecord]:
        """Reset, load ``instructions`` and run until drained or the ceiling.

        ``forwarding`` and ``max_cycles`` default to the simulator's options.
        Reaching ``max_cycles`` is not an error; the partial history is
        returned.
        """
        limit = self.options.max_cycles if max_cycles is None else max_cycles
        if limit < 0:
            raise ValueError(f"max_cycles must be non-negative, got {limit}")
        if forwarding is not None:
            self.set_forwarding(forwarding)
        self.reset()
        self.load_program(instructions)
        logger.info(
            "Simulating %d instructions (forwarding=%s, max_cycles=%d)",
            len(self._order),
            self.forwarding_enabled,
            limit,
        )
        while not self.is_finished() and self.cycle < limit:
            self.advance_cycle()
        if not self.is_finished():
            logger.warning(
                "Stopped at cycle ceiling %d with %d instructions still live",
                limit,
                len(self._order),
            )
        stats = self.get_stats()
        logger.info(
            "Finished after %d cycles: %d completed, %d hazards, IPC %.3f",
            stats.total_cycles,
            stats.instructions_completed,
            stats.hazards_detected,
            stats.ipc,
        )
        return self.get_cycle_history()

    def get_instructions(self) -> List[Instruction]:
        return [self._arena[handle].clone() for handle in self._order]

    def get_stats(self) -> PipelineStats:
        stats = copy.copy(self._stats)
        stats.instructions_in_pipeline = len(self._order)
        return stats

    def get_cycle_history(self) -> List[CycleRecord]:
        return list(self._history)

    def latches(self) -> Dict[str, PipelineRegister]:
        return {latch.name: copy.copy(latch) for latch in self._latches()}

    def latch_instruction(self, name: str) -> Optional[Instruction]:
        for latch in self._latches():
            if latch.name == name:
                return self._instruction_at(latch).clone() if latch.valid else None
        raise KeyError(name)

    def stage_occupancy(self) -> Dict[str, Optional[int]]:
        return {
            "IF": self._id_of(self._fetch_slot),
            "ID": self._id_of(self.if_id.handle if self.if_id.valid else None),
            "EX": self._id_of(self.id_ex.handle if self.id_ex.valid else None),
            "MEM": self._id_of(self.ex_mem.handle if self.ex_mem.valid else None),
            "WB": self._id_of(self.mem_wb.handle if self.mem_wb.valid else None),
        }

    # Hazard detection ------------------------------------------------------

    def _detect_hazards(self) -> None:
        self.control = ControlSignals()
        if not self.if_id.valid:
            return
        consumer = self._instruction_at(self.if_id)

        hazard = HazardType.NONE
        if self.id_ex.mem_read and any(self.id_ex.writes(src) for src in consumer.sources):
            hazard = HazardType.LOAD_USE
        elif not self.forwarding_enabled and self._pending_producer(consumer) is not None:
            hazard = HazardType.RAW

        if hazard == HazardType.NONE:
            consumer.clear_hazard()
            return

        self.control.stall()
        if not consumer.is_stalled:
            self._stats.hazards_detected += 1
            self._stats.stalls_inserted += 1
            if hazard == HazardType.LOAD_USE:
                self._stats.load_use_hazards += 1
            else:
                self._stats.raw_hazards += 1
            logger.debug("cycle %d: %s hazard stalls %s", self.cycle, hazard.value, consumer.label)
        consumer.is_stalled = True
        consumer.has_hazard = True
        consumer.hazard_type = hazard

    def _pending_producer(self, consumer: Instruction) -> Optional[PipelineRegister]:
        # nearest producer first; the register file is only safe after WB
        for latch in (self.id_ex, self.ex_mem, self.mem_wb):
            if any(latch.writes(src) for src in consumer.sources):
                return latch
        return None

    # Forwarding ------------------------------------------------------------

    def _resolve_forwarding(self) -> None:
        self.forwarding = ForwardingDecision()
        if not self.forwarding_enabled or not self.id_ex.valid:
            return
        instr = self._instruction_at(self.id_ex)
        self.forwarding = ForwardingDecision(
            forward_a=self._forward_source(instr.src1),
            forward_b=self._forward_source(instr.src2),
        )
        self._stats.forwards += self.forwarding.count

    def _forward_source(self, register: Optional[str]) -> ForwardSource:
        if self.ex_mem.writes(register):
            return ForwardSource.EX_MEM
        if self.mem_wb.writes(register):
            return ForwardSource.MEM_WB
        return ForwardSource.NONE

    # Stage movement --------------------------------------------------------

    def _retire(self) -> None:
        if not self.mem_wb.valid:
            return
        instr = self._instruction_at(self.mem_wb)
        instr.stage = Stage.COMPLETE
        instr.cycle = self.cycle
        self._stats.instructions_completed += 1

    def _restage(self, latch: PipelineRegister, stage: Stage) -> Optional[Instruction]:
        if not latch.valid:
            return None
        instr = self._instruction_at(latch)
        instr.stage = stage
        instr.cycle = self.cycle
        return instr

    def _fetch(self) -> None:
        if self._fetch_slot is not None:
            self.if_id.load(self._fetch_slot, self._arena[self._fetch_slot])
            self._restage(self.if_id, Stage.ID)
        else:
            self.if_id.reset()
        self._fetch_slot = None
        if self._pending:
            handle = self._pending.popleft()
            instr = self._arena[handle]
            instr.stage = Stage.IF
            instr.cycle = self.cycle
            self._fetch_slot = handle

    def _record_cycle(self) -> CycleRecord:
        occupancy = self.stage_occupancy()
        consumer_hazard = HazardType.NONE
        if self.control.stalled and self.if_id.valid:
            consumer_hazard = self._instruction_at(self.if_id).hazard_type
        return CycleRecord(
            cycle=self.cycle,
            if_stage=occupancy["IF"],
            id_stage=occupancy["ID"],
            ex_stage=occupancy["EX"],
            mem_stage=occupancy["MEM"],
            wb_stage=occupancy["WB"],
            stalled=self.control.stalled,
            bubble=self.control.idex_zero,
            hazard_type=consumer_hazard,
            forward_a=self.forwarding.forward_a,
            forward_b=self.forwarding.forward_b,
        )

    def _drop_completed(self) -> None:
        keep: List[int] = []
        for handle in self._order:
            instr = self._arena[handle]
            if instr.stage == Stage.COMPLETE and instr.cycle < self.cycle:
                del self._arena[handle]
            else:
                keep.append(handle)
        self._order = keep

    def _latches(self) -> Tuple[PipelineRegister, ...]:
        return (self.if_id, self.id_ex, self.ex_mem, self.mem_wb)

    def _instruction_at(self, latch: PipelineRegister) -> Instruction:
        return self._arena[latch.handle]

    def _id_of(self, handle: Optional[int]) -> Optional[int]:
        if handle is None:
            return None
        return self._arena[handle].id


SAMPLE_PROGRAM_TEXT = """\
# RAW on R1, load-use on R4, R1 written twice before MUL reads it
ADD R1, R2, R3
SUB R5, R1, R6
LOAD R4, MEM[R5]
ADD R7, R4, R2
SUB R1, R6, R2
MUL R3, R1, R7
STORE R3, MEM[R5]
BRANCH R3
"""

REGISTER_RE = re.compile(r"^R(\d+)$")
MEM_OPERAND_RE = re.compile(r"^MEM\[(\w+)\]$")


def parse_program(text: str, generator: Optional[InstructionGenerator] = None) -> List[Instruction]:
    generator = generator or InstructionGenerator()
    instructions: List[Instruction] = []
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        tokens = [tok for tok in re.split(r"[,\s]+", line) if tok]
        op = tokens[0].upper()
        try:
            kind = InstructionType(op)
        except ValueError as exc:
            raise ValueError(f"Line {line_no}: unsupported opcode '{op}'") from exc
        operands = [_parse_register(tok, line_no, generator) for tok in tokens[1:]]
        try:
            if kind in ALU_TYPES:
                dest, src1, src2 = operands[0], operands[1], operands[2]
                instructions.append(generator.build(kind, dest, src1, src2))
            elif kind == InstructionType.LOAD:
                dest, addr = operands[0], operands[1]
                instructions.append(generator.build(kind, dest, addr))
            elif kind == InstructionType.STORE:
                value, addr = operands[0], operands[1]
                instructions.append(generator.build(kind, None, value, addr))
            else:
                instructions.append(generator.build(kind, None, operands[0]))
        except IndexError as exc:
            raise ValueError(f"Line {line_no}: missing operand in '{raw_line.strip()}'") from exc
    return instructions


def _parse_register(token: str, line_no: int, generator: InstructionGenerator) -> str:
    token = token.upper()
    match = MEM_OPERAND_RE.match(token)
    if match:
        token = match.group(1)
    reg = REGISTER_RE.match(token)
    if not reg or int(reg.group(1)) >= generator.register_count:
        raise ValueError(
            f"Line {line_no}: unknown register '{token}' (expected R0-R{generator.register_count - 1})"
        )
    return f"R{int(reg.group(1))}"


def build_sample_program(generator: Optional[InstructionGenerator] = None) -> List[Instruction]:
    return parse_program(SAMPLE_PROGRAM_TEXT, generator)


def format_instruction(instr: Instruction) -> str:
    kind = instr.op
    if kind in ALU_TYPES:
        symbol = {InstructionType.ADD: "+", InstructionType.SUB: "-", InstructionType.MUL: "*"}[kind]
        return f"{instr.dest} = {instr.src1} {symbol} {instr.src2}"
    if kind == InstructionType.LOAD:
        return f"{instr.dest} = MEM[{instr.src1}]"
    if kind == InstructionType.STORE:
        return f"MEM[{instr.src2}] = {instr.src1}"
    return f"BRANCH if {instr.src1}"


def count_potential_hazards(program: List[Instruction]) -> int:
    """Adjacent producer/consumer pairs, ignoring writes to R0."""
    count = 0
    for prev, instr in zip(program, program[1:]):
        if prev.dest and prev.dest != ZERO_REGISTER and instr.reads(prev.dest):
            count += 1
    return count
