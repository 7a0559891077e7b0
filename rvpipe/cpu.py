import functools
import operator

import amaranth as am
import amaranth.lib.data
import amaranth.lib.enum
import amaranth.lib.wiring

from rvpipe.alu import Alu, AluOp, BranchUnit
from rvpipe.cache import cache_bus
from rvpipe.decoder import Decoder, DecodedInst, InstType
from rvpipe.instruction import Reg, Funct3Mem, MMIO_ADDRESSES
from rvpipe.regfile import RegisterFile

class FaultCause(am.lib.enum.Enum, shape=2):
    NONE = 0
    MISALIGNED = 1
    OUT_OF_RANGE = 2

class Fault(am.lib.data.Struct):
    valid: am.unsigned(1)
    cause: FaultCause
    addr: am.unsigned(32)
    pc: am.unsigned(32)

# pipeline registers. each one is a "maybe" bundle, only meaningful
# while valid is set

class FetchSlot(am.lib.data.Struct):
    # the fetch currently sitting in the instruction cache
    valid: am.unsigned(1)
    pc: am.unsigned(32)
    epoch: am.unsigned(1)

class ExecuteSlot(am.lib.data.Struct):
    valid: am.unsigned(1)
    pc: am.unsigned(32)
    instr: am.unsigned(32)
    inst: DecodedInst
    rs1: am.unsigned(32)
    rs2: am.unsigned(32)

class MemorySlot(am.lib.data.Struct):
    valid: am.unsigned(1)
    pc: am.unsigned(32)
    kind: InstType
    rd: am.unsigned(5)
    result: am.unsigned(32)
    mem_func: Funct3Mem
    addr: am.unsigned(32)
    store_data: am.unsigned(32)

class WritebackSlot(am.lib.data.Struct):
    valid: am.unsigned(1)
    pc: am.unsigned(32)
    kind: InstType
    rd: am.unsigned(5)
    value: am.unsigned(32)
    mem_func: Funct3Mem
    # byte offset of a load within its word
    offset: am.unsigned(2)

class Cpu(am.lib.wiring.Component):
    """Five stage, in-order, single issue rv32i pipeline.

    Fetch predicts PC + 4 and Execute redirects it on taken branches
    and jumps. Every fetch is tagged with the current epoch, and a
    redirect flips the epoch, so fetches from the old path are dropped
    when they come back from the cache. Decode reads operands with
    forwarding from Execute, Memory and Writeback, and only stalls
    for load results that are not back yet.

    Memory faults (misaligned or out of range accesses, and fetches
    from bad addresses) are reported on `fault` once everything older
    has retired, and then the core halts.
    """

    ibus: am.lib.wiring.Out(cache_bus())
    dbus: am.lib.wiring.Out(cache_bus())
    fault: am.lib.wiring.Out(Fault)

    xlen = 32

    def __init__(self, mem_size=16 * 1024 * 1024, reset_pc=0, stack_top=None):
        super().__init__()

        if stack_top is None:
            stack_top = mem_size

        self.mem_size = mem_size
        self.reset_pc = reset_pc

        # fetch state
        self.pc = am.Signal(self.xlen, init=reset_pc)
        self.epoch = am.Signal(1)

        # pipeline registers
        self.fetch = am.Signal(FetchSlot)
        self.de = am.Signal(ExecuteSlot)
        self.em = am.Signal(MemorySlot)
        self.mw = am.Signal(WritebackSlot)

        # set by the first fault, freezes every stage
        self.halted = am.Signal(1)

        # retirement, for counters and test checkpoints
        self.retire_valid = am.Signal(1)
        self.retire_pc = am.Signal(self.xlen)
        self.instret = am.Signal(64)

        # print every unsupported instruction that executes
        self.report_unsupported = False

        self.decoder = Decoder()
        self.regfile = RegisterFile(self.xlen, init={Reg.SP: stack_top})
        self.alu = Alu(self.xlen)
        self.branch = BranchUnit(self.xlen)

    @property
    def regs(self):
        return self.regfile.regs

    @property
    def debug_traces(self):
        return [
            self.pc,
            self.epoch,
            self.fetch.as_value(),
            self.de.as_value(),
            self.em.as_value(),
            self.mw.as_value(),
            self.retire_valid,
            self.retire_pc,
        ] + self.regfile.registers

    def elaborate(self, platform):
        m = am.Module()

        m.submodules.decoder = decoder = self.decoder
        m.submodules.regfile = regfile = self.regfile
        m.submodules.alu = alu = self.alu
        m.submodules.branch = branch = self.branch

        de = self.de
        em = self.em
        mw = self.mw

        # handshakes between stages, youngest stage last
        w_done = am.Signal(1)
        mw_free = am.Signal(1)
        m_done = am.Signal(1)
        em_free = am.Signal(1)
        e_done = am.Signal(1)
        de_free = am.Signal(1)
        redirect = am.Signal(1)

        m.d.comb += [
            mw_free.eq(~mw.valid | w_done),
            em_free.eq(~em.valid | m_done),
            de_free.eq(~de.valid | e_done),
        ]

        #
        # writeback
        #

        w_load = mw.valid & (mw.kind == InstType.LOAD)
        load_value = self.extend_load(m, self.dbus.resp.payload, mw.mem_func, mw.offset)

        m.d.comb += [
            self.dbus.resp.ready.eq(w_load),
            w_done.eq(mw.valid & ~self.halted & (~w_load | self.dbus.resp.valid)),

            # rd is zero for anything that doesn't write back
            regfile.rd_addr.eq(mw.rd),
            regfile.rd_data.eq(am.Mux(w_load, load_value, mw.value)),
            regfile.rd_en.eq(w_done),

            self.retire_valid.eq(w_done),
            self.retire_pc.eq(mw.pc),
        ]

        with m.If(w_done):
            m.d.sync += self.instret.eq(self.instret + 1)

        #
        # memory
        #

        is_mem = em.valid & ((em.kind == InstType.LOAD) | (em.kind == InstType.STORE))
        misaligned = am.Signal(1)
        sel = am.Signal(4)

        with m.Switch(em.mem_func):
            with m.Case(Funct3Mem.BYTE, Funct3Mem.BYTE_U):
                m.d.comb += sel.eq(am.C(0b0001, 4) << em.addr[:2])
            with m.Case(Funct3Mem.HALF, Funct3Mem.HALF_U):
                m.d.comb += [
                    sel.eq(am.C(0b0011, 4) << em.addr[:2]),
                    misaligned.eq(em.addr[0]),
                ]
            with m.Case(Funct3Mem.WORD):
                m.d.comb += [
                    sel.eq(0b1111),
                    misaligned.eq(em.addr[:2] != 0),
                ]

        is_mmio = functools.reduce(operator.or_, [em.addr == a for a in MMIO_ADDRESSES])
        out_of_range = ~is_mmio & (em.addr >= self.mem_size)
        m_bad = is_mem & (misaligned | out_of_range)

        m.d.comb += [
            self.dbus.req.valid.eq(is_mem & ~m_bad & mw_free & ~self.halted),
            self.dbus.req.payload.addr.eq(em.addr),
            self.dbus.req.payload.write.eq(em.kind == InstType.STORE),
            self.dbus.req.payload.data.eq(em.store_data << (em.addr[:2] << 3)),
            self.dbus.req.payload.sel.eq(sel),

            m_done.eq(em.valid & ~m_bad & mw_free & ~self.halted & (~is_mem | self.dbus.req.ready)),
        ]

        with m.If(m_done):
            m.d.sync += [
                mw.valid.eq(1),
                mw.pc.eq(em.pc),
                mw.kind.eq(em.kind),
                mw.rd.eq(em.rd),
                mw.value.eq(em.result),
                mw.mem_func.eq(em.mem_func),
                mw.offset.eq(em.addr[:2]),
            ]
        with m.Elif(w_done):
            m.d.sync += mw.valid.eq(0)

        #
        # execute
        #

        inst = de.inst
        pc_plus4 = am.Signal(self.xlen)
        target = am.Signal(self.xlen)
        next_pc = am.Signal(self.xlen)
        e_result = am.Signal(self.xlen)

        m.d.comb += [
            pc_plus4.eq(de.pc + 4),
            target.eq(de.pc + inst.imm),

            # defaults cover OP_IMM, LOAD and STORE
            alu.in1.eq(de.rs1),
            alu.in2.eq(inst.imm),
            alu.op.eq(AluOp.ADD),
            branch.in1.eq(de.rs1),
            branch.in2.eq(de.rs2),
            branch.func.eq(inst.br_func),

            next_pc.eq(pc_plus4),
            e_result.eq(alu.out),
        ]

        with m.Switch(inst.kind):
            with m.Case(InstType.OP):
                m.d.comb += [
                    alu.in2.eq(de.rs2),
                    alu.op.eq(inst.alu_op),
                ]

            with m.Case(InstType.OP_IMM):
                m.d.comb += alu.op.eq(inst.alu_op)

            with m.Case(InstType.LUI):
                m.d.comb += e_result.eq(inst.imm)

            with m.Case(InstType.AUIPC):
                m.d.comb += e_result.eq(target)

            with m.Case(InstType.JAL):
                m.d.comb += [
                    e_result.eq(pc_plus4),
                    next_pc.eq(target),
                ]

            with m.Case(InstType.JALR):
                # careful: LSB needs to be set to 0
                m.d.comb += [
                    e_result.eq(pc_plus4),
                    next_pc.eq(am.Cat(0, alu.out[1:])),
                ]

            with m.Case(InstType.BRANCH):
                with m.If(branch.taken):
                    m.d.comb += next_pc.eq(target)

            with m.Case(InstType.UNSUPPORTED):
                m.d.comb += e_result.eq(0)

        m.d.comb += [
            e_done.eq(de.valid & em_free & ~self.halted),
            redirect.eq(e_done & (next_pc != pc_plus4)),
        ]

        with m.If(e_done):
            m.d.sync += [
                em.valid.eq(1),
                em.pc.eq(de.pc),
                em.kind.eq(inst.kind),
                em.rd.eq(inst.rd),
                em.result.eq(e_result),
                em.mem_func.eq(inst.mem_func),
                em.addr.eq(alu.out),
                em.store_data.eq(de.rs2),
            ]
        with m.Elif(m_done):
            m.d.sync += em.valid.eq(0)

        if self.report_unsupported:
            with m.If(e_done & (inst.kind == InstType.UNSUPPORTED)):
                info = am.Format('!! unsupported instruction: pc = 0x{:08x}, 0x{:08x}', de.pc, de.instr)
                m.d.sync += am.Print(info)

        #
        # decode
        #

        resp = self.ibus.resp
        stale = self.fetch.epoch != self.epoch
        dec = decoder.decoded

        m.d.comb += [
            decoder.instr.eq(resp.payload),
            regfile.rs1_addr.eq(dec.rs1),
            regfile.rs2_addr.eq(dec.rs2),
        ]

        rs1, rs1_stall = self.bypass(m, dec.rs1, regfile.rs1_data, e_result, load_value)
        rs2, rs2_stall = self.bypass(m, dec.rs2, regfile.rs2_data, e_result, load_value)

        arrived = resp.valid & self.fetch.valid
        d_take = arrived & ~stale & de_free & ~rs1_stall & ~rs2_stall & ~self.halted
        d_drop = arrived & stale
        m.d.comb += resp.ready.eq(d_take | d_drop)

        # anything decoded alongside a redirect is from the old path
        with m.If(d_take & ~redirect):
            m.d.sync += [
                de.valid.eq(1),
                de.pc.eq(self.fetch.pc),
                de.instr.eq(resp.payload),
                de.inst.eq(dec),
                de.rs1.eq(rs1),
                de.rs2.eq(rs2),
            ]
        with m.Elif(e_done):
            m.d.sync += de.valid.eq(0)

        #
        # fetch
        #

        f_bad = (self.pc[:2] != 0) | (self.pc >= self.mem_size)

        m.d.comb += [
            self.ibus.req.valid.eq(~f_bad & ~self.halted),
            self.ibus.req.payload.addr.eq(self.pc),
            self.ibus.req.payload.sel.eq(0b1111),
        ]
        f_issue = self.ibus.req.valid & self.ibus.req.ready

        with m.If(f_issue):
            m.d.sync += [
                self.fetch.valid.eq(1),
                self.fetch.pc.eq(self.pc),
                self.fetch.epoch.eq(self.epoch),
            ]
        with m.Elif(resp.ready):
            m.d.sync += self.fetch.valid.eq(0)

        with m.If(redirect):
            m.d.sync += [
                self.pc.eq(next_pc),
                self.epoch.eq(~self.epoch),
            ]
        with m.Elif(f_issue):
            m.d.sync += self.pc.eq(self.pc + 4)

        #
        # faults
        #

        drained = ~self.fetch.valid & ~de.valid & ~em.valid & ~mw.valid

        # memory faults wait until everything older has retired
        with m.If(m_bad & ~mw.valid & ~self.halted):
            m.d.comb += [
                self.fault.valid.eq(1),
                self.fault.addr.eq(em.addr),
                self.fault.pc.eq(em.pc),
            ]
            with m.If(misaligned):
                m.d.comb += self.fault.cause.eq(FaultCause.MISALIGNED)
            with m.Else():
                m.d.comb += self.fault.cause.eq(FaultCause.OUT_OF_RANGE)

        # a bad pc is only fatal once nothing can redirect away from it
        with m.Elif(f_bad & drained & ~self.halted):
            m.d.comb += [
                self.fault.valid.eq(1),
                self.fault.addr.eq(self.pc),
                self.fault.pc.eq(self.pc),
            ]
            with m.If(self.pc[:2] != 0):
                m.d.comb += self.fault.cause.eq(FaultCause.MISALIGNED)
            with m.Else():
                m.d.comb += self.fault.cause.eq(FaultCause.OUT_OF_RANGE)

        with m.If(self.fault.valid):
            m.d.sync += self.halted.eq(1)

        return m

    def bypass(self, m, index, rf_data, e_result, load_value):
        """Resolve one source operand for Decode.

        Returns the operand value and a stall flag. The youngest
        in-flight writer of the register wins; results that are not
        known yet (loads before their data arrives) stall.
        """

        de = self.de
        em = self.em
        mw = self.mw

        value = am.Signal(self.xlen)
        stall = am.Signal(1)

        with m.If(index == Reg.ZERO):
            m.d.comb += value.eq(0)

        with m.Elif(de.valid & (de.inst.rd == index)):
            with m.If(de.inst.kind == InstType.LOAD):
                m.d.comb += stall.eq(1)
            with m.Else():
                m.d.comb += value.eq(e_result)

        with m.Elif(em.valid & (em.rd == index)):
            with m.If(em.kind == InstType.LOAD):
                m.d.comb += stall.eq(1)
            with m.Else():
                m.d.comb += value.eq(em.result)

        with m.Elif(mw.valid & (mw.rd == index)):
            with m.If(mw.kind == InstType.LOAD):
                with m.If(self.dbus.resp.valid):
                    m.d.comb += value.eq(load_value)
                with m.Else():
                    m.d.comb += stall.eq(1)
            with m.Else():
                m.d.comb += value.eq(mw.value)

        with m.Else():
            m.d.comb += value.eq(rf_data)

        return value, stall

    def extend_load(self, m, raw, mem_func, offset):
        """Align a loaded word and sign or zero extend it."""

        # read shifted data
        data = raw >> (offset << 3)

        mask = am.Signal(self.xlen)
        signed = am.Signal(1)
        with m.Switch(mem_func):
            with m.Case(Funct3Mem.BYTE):
                m.d.comb += [mask.eq(0xff), signed.eq(1)]
            with m.Case(Funct3Mem.BYTE_U):
                m.d.comb += mask.eq(0xff)
            with m.Case(Funct3Mem.HALF):
                m.d.comb += [mask.eq(0xffff), signed.eq(1)]
            with m.Case(Funct3Mem.HALF_U):
                m.d.comb += mask.eq(0xffff)
            with m.Case(Funct3Mem.WORD):
                m.d.comb += mask.eq(0xffff_ffff)

        masked = am.Signal(self.xlen)
        m.d.comb += masked.eq(data & mask)

        # sign extend data
        sign = signed & am.Mux(mask[8], masked[15], masked[7])

        value = am.Signal(self.xlen)
        m.d.comb += value.eq(masked | (~mask & am.Cat(*(sign for _ in range(self.xlen)))))
        return value
