import amaranth as am
import amaranth.lib.data
import amaranth.lib.enum
import amaranth.lib.wiring

from rvpipe.alu import AluOp
from rvpipe.instruction import Instruction, Op, Funct3Alu, Funct3Branch, Funct3Mem, Funct7Alu

class InstType(am.lib.enum.Enum, shape=4):
    # anything we don't recognize runs as a no-op
    UNSUPPORTED = 0
    OP = 1
    OP_IMM = 2
    LUI = 3
    AUIPC = 4
    JAL = 5
    JALR = 6
    BRANCH = 7
    LOAD = 8
    STORE = 9

class DecodedInst(am.lib.data.Struct):
    kind: InstType
    alu_op: AluOp
    br_func: Funct3Branch
    mem_func: Funct3Mem
    rs1: am.unsigned(5)
    rs2: am.unsigned(5)
    rd: am.unsigned(5)
    # sign extended, stored as raw bits
    imm: am.unsigned(32)

class Decoder(am.lib.wiring.Component):
    """Turns a raw instruction word into a `DecodedInst`.

    Register indices the instruction does not read or write are left
    at zero, so later stages can treat x0 as "no dependency" and "no
    write back". Unrecognized encodings, including unknown funct3 or
    funct7 values under a known opcode, decode as
    `InstType.UNSUPPORTED` with every index zero.
    """

    instr: am.lib.wiring.In(32)
    decoded: am.lib.wiring.Out(DecodedInst)

    def elaborate(self, platform):
        m = am.Module()

        instr = Instruction(self.instr)

        with m.Switch(instr.op):
            with m.Case(Op.LUI):
                self.accept(m, InstType.LUI, instr.imm_u, rd=instr.rd)

            with m.Case(Op.AUIPC):
                self.accept(m, InstType.AUIPC, instr.imm_u, rd=instr.rd)

            with m.Case(Op.JAL):
                self.accept(m, InstType.JAL, instr.imm_j, rd=instr.rd)

            with m.Case(Op.JALR):
                with m.If(instr.funct3.raw == 0):
                    self.accept(m, InstType.JALR, instr.imm_i, rd=instr.rd, rs1=instr.rs1)

            with m.Case(Op.BRANCH):
                with m.Switch(instr.funct3.branch):
                    with m.Case(Funct3Branch.EQ, Funct3Branch.NE,
                                Funct3Branch.LT, Funct3Branch.GE,
                                Funct3Branch.LTU, Funct3Branch.GEU):
                        self.accept(m, InstType.BRANCH, instr.imm_b, rs1=instr.rs1, rs2=instr.rs2)
                        m.d.comb += self.decoded.br_func.eq(instr.funct3.branch)

            with m.Case(Op.LOAD):
                with m.Switch(instr.funct3.mem):
                    with m.Case(Funct3Mem.BYTE, Funct3Mem.HALF, Funct3Mem.WORD,
                                Funct3Mem.BYTE_U, Funct3Mem.HALF_U):
                        self.accept(m, InstType.LOAD, instr.imm_i, rd=instr.rd, rs1=instr.rs1)
                        m.d.comb += self.decoded.mem_func.eq(instr.funct3.mem)

            with m.Case(Op.STORE):
                with m.Switch(instr.funct3.mem):
                    with m.Case(Funct3Mem.BYTE, Funct3Mem.HALF, Funct3Mem.WORD):
                        self.accept(m, InstType.STORE, instr.imm_s, rs1=instr.rs1, rs2=instr.rs2)
                        m.d.comb += self.decoded.mem_func.eq(instr.funct3.mem)

            with m.Case(Op.OP_IMM):
                def op_imm(alu_op):
                    self.accept(m, InstType.OP_IMM, instr.imm_i, rd=instr.rd, rs1=instr.rs1)
                    m.d.comb += self.decoded.alu_op.eq(alu_op)

                with m.Switch(instr.funct3.alu):
                    with m.Case(Funct3Alu.ADD_SUB):
                        op_imm(AluOp.ADD)
                    with m.Case(Funct3Alu.LT):
                        op_imm(AluOp.LT)
                    with m.Case(Funct3Alu.LTU):
                        op_imm(AluOp.LTU)
                    with m.Case(Funct3Alu.XOR):
                        op_imm(AluOp.XOR)
                    with m.Case(Funct3Alu.OR):
                        op_imm(AluOp.OR)
                    with m.Case(Funct3Alu.AND):
                        op_imm(AluOp.AND)

                    # shifts keep funct7 in the immediate
                    with m.Case(Funct3Alu.SHIFT_L):
                        with m.If(instr.funct7.alu == Funct7Alu.NORMAL):
                            op_imm(AluOp.SHIFT_LL)
                    with m.Case(Funct3Alu.SHIFT_R):
                        with m.If(instr.funct7.alu == Funct7Alu.NORMAL):
                            op_imm(AluOp.SHIFT_RL)
                        with m.Elif(instr.funct7.alu == Funct7Alu.ALT):
                            op_imm(AluOp.SHIFT_RA)

            with m.Case(Op.OP):
                def op(alu_op):
                    self.accept(m, InstType.OP, 0, rd=instr.rd, rs1=instr.rs1, rs2=instr.rs2)
                    m.d.comb += self.decoded.alu_op.eq(alu_op)

                with m.If(instr.funct7.alu == Funct7Alu.NORMAL):
                    with m.Switch(instr.funct3.alu):
                        with m.Case(Funct3Alu.ADD_SUB):
                            op(AluOp.ADD)
                        with m.Case(Funct3Alu.SHIFT_L):
                            op(AluOp.SHIFT_LL)
                        with m.Case(Funct3Alu.LT):
                            op(AluOp.LT)
                        with m.Case(Funct3Alu.LTU):
                            op(AluOp.LTU)
                        with m.Case(Funct3Alu.XOR):
                            op(AluOp.XOR)
                        with m.Case(Funct3Alu.SHIFT_R):
                            op(AluOp.SHIFT_RL)
                        with m.Case(Funct3Alu.OR):
                            op(AluOp.OR)
                        with m.Case(Funct3Alu.AND):
                            op(AluOp.AND)

                with m.Elif(instr.funct7.alu == Funct7Alu.ALT):
                    with m.Switch(instr.funct3.alu):
                        with m.Case(Funct3Alu.ADD_SUB):
                            op(AluOp.SUB)
                        with m.Case(Funct3Alu.SHIFT_R):
                            op(AluOp.SHIFT_RA)

            # one hart and no reordering: FENCE and FENCE.I are addi x0, x0, 0
            with m.Case(Op.MISC_MEM):
                with m.If(instr.funct3.raw[1:] == 0):
                    self.accept(m, InstType.OP_IMM, 0)
                    m.d.comb += self.decoded.alu_op.eq(AluOp.ADD)

        return m

    def accept(self, m, kind, imm, rd=0, rs1=0, rs2=0):
        m.d.comb += [
            self.decoded.kind.eq(kind),
            self.decoded.imm.eq(imm),
            self.decoded.rd.eq(rd),
            self.decoded.rs1.eq(rs1),
            self.decoded.rs2.eq(rs2),
        ]
