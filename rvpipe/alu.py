import amaranth as am
import amaranth.lib.enum
import amaranth.lib.wiring

from rvpipe.instruction import Funct3Branch

class AluOp(am.lib.enum.Enum, shape=4):
    ADD = 0
    SUB = 1
    SHIFT_LL = 2
    SHIFT_RL = 3
    SHIFT_RA = 4
    LT = 5
    LTU = 6
    XOR = 7
    OR = 8
    AND = 9

class Alu(am.lib.wiring.Component):
    def __init__(self, xlen=32):
        super().__init__({
            'in1': am.lib.wiring.In(xlen),
            'in2': am.lib.wiring.In(xlen),
            'op': am.lib.wiring.In(AluOp),
            'out': am.lib.wiring.Out(xlen),
        })

        self.xlen = xlen
        self.shift_amount = am.Signal(range(xlen))
        self.minus = am.Signal(xlen + 1)
        self.plus = am.Signal(xlen)
        self.ltu = am.Signal(1)
        self.lt = am.Signal(1)

    def elaborate(self, platform):
        m = am.Module()

        # rv32i only ever shifts by the low bits of the second operand
        m.d.comb += [
            self.shift_amount.eq(self.in2[:self.shift_amount.shape().width]),
            self.minus.eq(self.in1.as_unsigned() - self.in2.as_unsigned()),
            self.plus.eq(self.in1 + self.in2),
            self.ltu.eq(self.minus[-1]),
            self.lt.eq(am.Mux(self.in1[-1] ^ self.in2[-1], self.in1[-1], self.minus[-1])),
        ]

        # shared shifter for ll / rl / ra
        shift_in = am.Mux(self.op == AluOp.SHIFT_LL, self.in1[::-1], self.in1)
        rightshift = am.Cat(shift_in, (self.op == AluOp.SHIFT_RA) & shift_in[-1]).as_signed() >> self.shift_amount
        leftshift = rightshift[:-1][::-1]

        with m.Switch(self.op):
            with m.Case(AluOp.ADD):
                m.d.comb += self.out.eq(self.plus)
            with m.Case(AluOp.SUB):
                m.d.comb += self.out.eq(self.minus)
            with m.Case(AluOp.SHIFT_LL):
                m.d.comb += self.out.eq(leftshift)
            with m.Case(AluOp.SHIFT_RL, AluOp.SHIFT_RA):
                m.d.comb += self.out.eq(rightshift)
            with m.Case(AluOp.LT):
                m.d.comb += self.out.eq(self.lt)
            with m.Case(AluOp.LTU):
                m.d.comb += self.out.eq(self.ltu)
            with m.Case(AluOp.XOR):
                m.d.comb += self.out.eq(self.in1 ^ self.in2)
            with m.Case(AluOp.OR):
                m.d.comb += self.out.eq(self.in1 | self.in2)
            with m.Case(AluOp.AND):
                m.d.comb += self.out.eq(self.in1 & self.in2)

        return m

class BranchUnit(am.lib.wiring.Component):
    """Evaluates the six rv32i branch comparisons.

    `taken` is high when `in1` and `in2` satisfy the comparison
    selected by `func`.
    """

    def __init__(self, xlen=32):
        super().__init__({
            'in1': am.lib.wiring.In(xlen),
            'in2': am.lib.wiring.In(xlen),
            'func': am.lib.wiring.In(Funct3Branch),
            'taken': am.lib.wiring.Out(1),
        })

        self.xlen = xlen
        self.minus = am.Signal(xlen + 1)
        self.eq = am.Signal(1)
        self.ltu = am.Signal(1)
        self.lt = am.Signal(1)

    def elaborate(self, platform):
        m = am.Module()

        m.d.comb += [
            self.minus.eq(self.in1.as_unsigned() - self.in2.as_unsigned()),
            self.eq.eq(self.minus[:-1] == 0),
            self.ltu.eq(self.minus[-1]),
            self.lt.eq(am.Mux(self.in1[-1] ^ self.in2[-1], self.in1[-1], self.minus[-1])),
        ]

        with m.Switch(self.func):
            with m.Case(Funct3Branch.EQ):
                m.d.comb += self.taken.eq(self.eq)
            with m.Case(Funct3Branch.NE):
                m.d.comb += self.taken.eq(~self.eq)
            with m.Case(Funct3Branch.LT):
                m.d.comb += self.taken.eq(self.lt)
            with m.Case(Funct3Branch.GE):
                m.d.comb += self.taken.eq(~self.lt)
            with m.Case(Funct3Branch.LTU):
                m.d.comb += self.taken.eq(self.ltu)
            with m.Case(Funct3Branch.GEU):
                m.d.comb += self.taken.eq(~self.ltu)

        return m
