import amaranth as am
import amaranth.lib.wiring
import pytest

from rvpipe.cache import Cache, CacheState, LineStatus, memory_bus
from rvpipe.errors import CacheProtocolViolation
from rvpipe.memory import MainMemory, MemoryPort

from conftest import simulate

LINE_WORDS = 4
SETS = 4
# addresses this far apart share a set
STRIDE = 4 * LINE_WORDS * SETS

class CacheBench:
    """Drives a lone cache, with main memory behind it."""

    def __init__(self, ways):
        self.dut = Cache(ways=ways, sets=SETS, line_words=LINE_WORDS)
        self.memory = MainMemory(size=4096, line_words=LINE_WORDS, fill_latency=3, word_latency=1)
        self.port = MemoryPort('mem', self.memory, self.dut.mem)
        self.cycle = 0

        for addr in range(0, 4096, 4):
            self.memory.write(addr, addr ^ 0xa5a5_0000)

    async def tick(self, ctx):
        self.port.sample(ctx, self.cycle)
        await ctx.tick()
        self.cycle += 1
        self.port.advance(self.cycle)
        self.port.drive(ctx)

    async def send(self, ctx, addr, write=False, data=0, sel=0b1111):
        bus = self.dut.bus
        ctx.set(bus.req.valid, 1)
        ctx.set(bus.req.payload.addr, addr)
        ctx.set(bus.req.payload.write, write)
        ctx.set(bus.req.payload.data, data)
        ctx.set(bus.req.payload.sel, sel)

        for _ in range(100):
            accepted = ctx.get(bus.req.ready)
            await self.tick(ctx)
            if accepted:
                break
        else:
            raise AssertionError('request never accepted')

        ctx.set(bus.req.valid, 0)

    async def read(self, ctx, addr):
        bus = self.dut.bus
        await self.send(ctx, addr)

        ctx.set(bus.resp.ready, 1)
        for _ in range(100):
            if ctx.get(bus.resp.valid):
                value = ctx.get(bus.resp.payload)
                await self.tick(ctx)
                ctx.set(bus.resp.ready, 0)
                return value
            await self.tick(ctx)
        raise AssertionError('no response')

    async def write(self, ctx, addr, data, sel=0b1111):
        await self.send(ctx, addr, write=True, data=data, sel=sel)
        for _ in range(100):
            if ctx.get(self.dut.idle):
                return
            await self.tick(ctx)
        raise AssertionError('write never finished')

    def stats(self, ctx):
        return (ctx.get(self.dut.hits), ctx.get(self.dut.misses), ctx.get(self.dut.writebacks))

    def run(self, testbench):
        async def wrapped(ctx):
            self.port.drive(ctx)
            await testbench(ctx)

        simulate(self.dut, wrapped)

@pytest.mark.parametrize('ways', [1, 2])
def test_miss_then_hit(ways):
    bench = CacheBench(ways)

    async def testbench(ctx):
        assert await bench.read(ctx, 0x104) == 0x104 ^ 0xa5a5_0000
        assert bench.stats(ctx) == (0, 1, 0)

        # rest of the line is now cached
        assert await bench.read(ctx, 0x10c) == 0x10c ^ 0xa5a5_0000
        assert await bench.read(ctx, 0x104) == 0x104 ^ 0xa5a5_0000
        assert bench.stats(ctx) == (2, 1, 0)

    bench.run(testbench)

@pytest.mark.parametrize('ways, hits, misses', [(1, 0, 6), (2, 4, 2)])
def test_alternating_conflict(ways, hits, misses):
    bench = CacheBench(ways)
    a = 0x200
    b = a + STRIDE

    async def testbench(ctx):
        for _ in range(3):
            assert await bench.read(ctx, a) == a ^ 0xa5a5_0000
            assert await bench.read(ctx, b) == b ^ 0xa5a5_0000
        assert bench.stats(ctx) == (hits, misses, 0)

    bench.run(testbench)

def test_lru_replacement():
    bench = CacheBench(2)
    a = 0x40
    b = a + STRIDE
    c = b + STRIDE

    async def testbench(ctx):
        await bench.read(ctx, a)
        await bench.read(ctx, b)
        await bench.read(ctx, a)
        # b is least recently used, so c replaces it
        await bench.read(ctx, c)
        await bench.read(ctx, a)
        assert bench.stats(ctx) == (2, 3, 0)
        await bench.read(ctx, b)
        assert bench.stats(ctx) == (2, 4, 0)

    bench.run(testbench)

@pytest.mark.parametrize('ways', [1, 2])
def test_write_back(ways):
    bench = CacheBench(ways)
    lines = [0x80 + n * STRIDE for n in range(ways + 1)]

    async def testbench(ctx):
        for n, addr in enumerate(lines):
            await bench.write(ctx, addr, 0x1111_1111 * (n + 1))

        # the first line was evicted, dirty
        assert bench.stats(ctx) == (0, ways + 1, 1)
        assert bench.memory.read(lines[0]) == 0x1111_1111
        # the newest one is only in the cache
        assert bench.memory.read(lines[-1]) == lines[-1] ^ 0xa5a5_0000

        for n, addr in enumerate(lines):
            assert await bench.read(ctx, addr) == 0x1111_1111 * (n + 1)

    bench.run(testbench)

def test_byte_enables():
    bench = CacheBench(1)

    async def testbench(ctx):
        await bench.write(ctx, 0x300, 0x0000_ab00, sel=0b0010)
        await bench.write(ctx, 0x300, 0xcd00_0000, sel=0b1000)
        assert await bench.read(ctx, 0x300) == (0x300 ^ 0xa5a5_0000) & 0x00ff_00ff | 0xcd00_ab00

        index = (0x300 // (4 * LINE_WORDS)) % SETS
        assert ctx.get(bench.dut.status[0].data[index]) == LineStatus.DIRTY.value
        assert ctx.get(bench.dut.state.as_value()) == CacheState.READY.value

    bench.run(testbench)

class Requester(am.lib.wiring.Component):
    """Nothing but a memory bus, driven by hand."""

    def __init__(self):
        super().__init__({'mem': am.lib.wiring.Out(memory_bus(LINE_WORDS))})

    def elaborate(self, platform):
        return am.Module()

def test_request_while_busy():
    dut = Requester()
    memory = MainMemory(size=4096, line_words=LINE_WORDS, fill_latency=3, word_latency=1)
    port = MemoryPort('mem', memory, dut.mem)

    async def testbench(ctx):
        port.drive(ctx)
        ctx.set(dut.mem.req.valid, 1)
        ctx.set(dut.mem.req.payload.addr, 0x40)
        port.sample(ctx, 0)

        port.advance(1)
        port.drive(ctx)
        assert not ctx.get(dut.mem.req.ready)

        # still filling 0x40, and a second request shows up
        ctx.set(dut.mem.req.payload.addr, 0x80)
        with pytest.raises(CacheProtocolViolation) as info:
            port.sample(ctx, 1)

        assert info.value.addr == 0x80
        assert info.value.cycle == 1
        assert str(info.value) == 'mem: new request while one is outstanding, addr = 0x00000080, cycle = 1'

    simulate(dut, testbench, clocked=False)
