import amaranth as am
import amaranth.lib.wiring

from rvpipe.instruction import Reg

class RegisterFile(am.lib.wiring.Component):
    """Two asynchronous read ports and one synchronous write port.

    x0 is never written, so it always reads back as zero.
    """

    def __init__(self, xlen=32, init={}):
        super().__init__({
            'rs1_addr': am.lib.wiring.In(5),
            'rs1_data': am.lib.wiring.Out(xlen),
            'rs2_addr': am.lib.wiring.In(5),
            'rs2_data': am.lib.wiring.Out(xlen),

            'rd_addr': am.lib.wiring.In(5),
            'rd_data': am.lib.wiring.In(xlen),
            'rd_en': am.lib.wiring.In(1),
        })

        self.xlen = xlen

        self.registers = []
        for i, r in enumerate(Reg):
            assert r.value == i
            value = init.get(r, 0) if r != Reg.ZERO else 0
            self.registers.append(am.Signal(xlen, name='x{}_{}'.format(i, r.name.lower()), init=value))
        self.regs = am.Array(self.registers)

    def elaborate(self, platform):
        m = am.Module()

        m.d.comb += [
            self.rs1_data.eq(self.regs[self.rs1_addr]),
            self.rs2_data.eq(self.regs[self.rs2_addr]),
        ]

        # only write to non-zero registers
        with m.If(self.rd_en & (self.rd_addr != Reg.ZERO)):
            m.d.sync += self.regs[self.rd_addr].eq(self.rd_data)

        return m

    def __getitem__(self, reg):
        if isinstance(reg, Reg):
            reg = reg.value
        return self.registers[reg]
