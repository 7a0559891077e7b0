from rvpipe.instruction import Reg
from rvpipe.regfile import RegisterFile

from conftest import simulate

def test_write_then_read():
    dut = RegisterFile()

    async def testbench(ctx):
        for i in range(1, 32):
            ctx.set(dut.rd_addr, i)
            ctx.set(dut.rd_data, 0x1000 + i)
            ctx.set(dut.rd_en, 1)
            await ctx.tick()
        ctx.set(dut.rd_en, 0)

        for i in range(32):
            ctx.set(dut.rs1_addr, i)
            ctx.set(dut.rs2_addr, 31 - i)
            assert ctx.get(dut.rs1_data) == (0x1000 + i if i else 0)
            assert ctx.get(dut.rs2_data) == (0x1000 + 31 - i if i != 31 else 0)

    simulate(dut, testbench)

def test_zero_ignores_writes():
    dut = RegisterFile()

    async def testbench(ctx):
        ctx.set(dut.rd_addr, 0)
        ctx.set(dut.rd_data, 0xdead_beef)
        ctx.set(dut.rd_en, 1)
        await ctx.tick()

        ctx.set(dut.rs1_addr, 0)
        assert ctx.get(dut.rs1_data) == 0
        assert ctx.get(dut[Reg.ZERO]) == 0

    simulate(dut, testbench)

def test_write_enable():
    dut = RegisterFile()

    async def testbench(ctx):
        ctx.set(dut.rd_addr, 5)
        ctx.set(dut.rd_data, 42)
        ctx.set(dut.rd_en, 0)
        await ctx.tick()
        assert ctx.get(dut[Reg.T0]) == 0

        ctx.set(dut.rd_en, 1)
        await ctx.tick()
        assert ctx.get(dut[Reg.T0]) == 42

    simulate(dut, testbench)

def test_init():
    dut = RegisterFile(init={Reg.SP: 0x100_0000, Reg.ZERO: 7})

    async def testbench(ctx):
        assert ctx.get(dut[Reg.SP]) == 0x100_0000
        assert ctx.get(dut[Reg.ZERO]) == 0
        assert ctx.get(dut[Reg.RA]) == 0

    simulate(dut, testbench)
