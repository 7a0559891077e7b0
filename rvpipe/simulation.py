import dataclasses

import amaranth as am
import amaranth.sim

import rvpipe.instruction
from rvpipe.cache import CacheState, LineStatus
from rvpipe.cpu import FaultCause
from rvpipe.decoder import InstType
from rvpipe.errors import MisalignedAccess, MemoryOutOfRange, SimulationTimeout
from rvpipe.memory import MainMemory, MemoryPort
from rvpipe.soc import Config, Soc

@dataclasses.dataclass
class CacheStats:
    hits: int
    misses: int
    writebacks: int

    @property
    def accesses(self):
        return self.hits + self.misses

    @property
    def hit_rate(self):
        if not self.accesses:
            return 0.0
        return self.hits / self.accesses

@dataclasses.dataclass
class Result:
    exit_code: int
    cycles: int
    instret: int
    console: list
    registers: list
    icache: CacheStats
    dcache: CacheStats
    memory: MainMemory = dataclasses.field(repr=False, default=None)

    @property
    def console_text(self):
        return ''.join(str(item) for item in self.console)

    @property
    def cpi(self):
        if not self.instret:
            return 0.0
        return self.cycles / self.instret

    def register(self, reg):
        if isinstance(reg, rvpipe.instruction.Reg):
            reg = reg.value
        return self.registers[reg]

    def format_registers(self):
        lines = []
        for r in rvpipe.instruction.Reg:
            lines.append('x{:<2} {:<4} = 0x{:08x}'.format(r.value, r.name.lower(), self.registers[r.value]))
        return '\n'.join(lines)

    def format_summary(self):
        lines = [
            'exit code:    {}'.format(self.exit_code),
            'cycles:       {}'.format(self.cycles),
            'instructions: {}'.format(self.instret),
            'cpi:          {:.3f}'.format(self.cpi),
        ]
        for name, stats in [('icache', self.icache), ('dcache', self.dcache)]:
            lines.append('{}:       {} hits, {} misses, {} writebacks ({:.1%} hit rate)'.format(
                name, stats.hits, stats.misses, stats.writebacks, stats.hit_rate))
        return '\n'.join(lines)

class Simulation:
    """Runs an image on the processor until it writes the exit address.

    Main memory is a Python model serviced from the testbench, one
    `MemoryPort` per cache. Each simulated cycle goes through `tick()`,
    which also turns processor faults into exceptions.
    """

    clk_freq = 1_000_000

    MAX_CYCLES = 1_000_000

    # cycles to wait for each checkpoint
    TIMEOUT = 2000

    def __init__(self, image, config=None, arguments=(), console=None, max_cycles=None, report_unsupported=False):
        if config is None:
            config = Config()
        if max_cycles is None:
            max_cycles = self.MAX_CYCLES
        if config.reset_pc is None:
            config = dataclasses.replace(config, reset_pc=image.entry)

        self.config = config.validate()
        self.image = image
        self.symbols = image.symbols
        self.max_cycles = max_cycles
        self.report_unsupported = report_unsupported

        self.memory = MainMemory(
            size=config.mem_size,
            line_words=config.line_words,
            fill_latency=config.fill_latency,
            word_latency=config.word_latency,
            arguments=arguments,
            console=console,
        )
        image.load_into(self.memory)

        self.dut = self.construct()
        self.ports = [
            MemoryPort('imem', self.memory, self.dut.imem),
            MemoryPort('dmem', self.memory, self.dut.dmem),
        ]

        self.cycles = 0
        self.started = False
        self.result = None

        self.sim = am.sim.Simulator(self.dut)
        self.sim.add_clock(1 / self.clk_freq)
        self.sim.add_testbench(self.testbench)

    def construct(self):
        dut = Soc(self.config)
        dut.cpu.report_unsupported = self.report_unsupported
        return dut

    def run(self, output=None):
        if output:
            with self.sim.write_vcd(output, traces=self.dut.debug_traces):
                self.sim.run()
        else:
            self.sim.run()

        return self.result

    async def testbench(self, ctx):
        await self.run_to_exit(ctx)
        self.result = self.finish(ctx)

    def start(self, ctx):
        self.started = True
        for port in self.ports:
            port.drive(ctx)

    async def tick(self, ctx):
        if not self.started:
            self.start(ctx)

        for port in self.ports:
            port.sample(ctx, self.cycles)

        await ctx.tick()
        self.cycles += 1

        for port in self.ports:
            port.advance(self.cycles)
        for port in self.ports:
            port.drive(ctx)

        self.check_fault(ctx)

        if self.cycles >= self.max_cycles and not self.memory.exited:
            raise SimulationTimeout('no exit after {} cycles'.format(self.cycles), pc=ctx.get(self.dut.cpu.pc), cycle=self.cycles)

    def check_fault(self, ctx):
        fault = self.dut.cpu.fault
        if not ctx.get(fault.valid):
            return

        cause = ctx.get(fault.cause.as_value())
        addr = ctx.get(fault.addr)
        pc = ctx.get(fault.pc)
        if cause == FaultCause.MISALIGNED.value:
            raise MisalignedAccess('misaligned access', addr=addr, pc=pc, cycle=self.cycles)
        raise MemoryOutOfRange('access outside main memory', addr=addr, pc=pc, cycle=self.cycles)

    async def run_to_exit(self, ctx):
        while not self.memory.exited:
            await self.tick(ctx)

    def resolve(self, addr_or_symbol):
        if isinstance(addr_or_symbol, str):
            try:
                return self.symbols[addr_or_symbol]
            except KeyError:
                raise RuntimeError('unknown symbol: {}'.format(addr_or_symbol))
        return addr_or_symbol

    async def advance_until(self, ctx, addr_or_symbol, max_ticks=None):
        """Run until the instruction at a label is about to retire.

        Everything older than that instruction has retired, and the
        instruction itself has not written back yet.
        """

        if max_ticks is None:
            max_ticks = self.TIMEOUT

        addr = self.resolve(addr_or_symbol)
        cpu = self.dut.cpu

        # always tick at least once, even if we're sitting on a checkpoint
        await self.tick(ctx)

        for _ in range(max_ticks):
            if ctx.get(cpu.retire_valid) and ctx.get(cpu.retire_pc) == addr:
                return
            await self.tick(ctx)

        if isinstance(addr_or_symbol, str):
            name = addr_or_symbol
        else:
            name = hex(addr_or_symbol)
        raise RuntimeError('timeout waiting for checkpoint {}'.format(name))

    def split(self, addr):
        config = self.config
        word = (addr >> 2) % config.line_words
        index = (addr // config.line_bytes) % config.sets
        tag = addr // (config.line_bytes * config.sets)
        return word, index, tag

    def peek(self, ctx, addr):
        """Read a word as the instructions that have retired see it.

        A store retiring this cycle was taken by the cache as it left
        Memory, but is left out here, so a checkpoint on a store sees
        memory from just before it.
        """

        addr &= ~3
        cpu = self.dut.cpu
        dcache = self.dut.dcache
        word, index, tag = self.split(addr)

        value = None
        for way in range(self.config.ways):
            status = ctx.get(dcache.status[way].data[index])
            if status != LineStatus.NOT_VALID.value and ctx.get(dcache.tags[way].data[index]) == tag:
                line = ctx.get(dcache.lines[way].data[index])
                value = (line >> (32 * word)) & 0xffff_ffff

        if value is None:
            value = self.memory.read(addr)

        # an older store the cache has taken but not finished yet. the
        # latched request belongs to the retiring instruction if that is
        # a store, since it was accepted on the way into Writeback
        busy = ctx.get(dcache.state.as_value()) != CacheState.READY.value
        retiring_store = ctx.get(cpu.retire_valid) and ctx.get(cpu.mw.kind.as_value()) == InstType.STORE.value
        if busy and not retiring_store and ctx.get(dcache.request.write) and ctx.get(dcache.request.addr) & ~3 == addr:
            sel = ctx.get(dcache.request.sel)
            data = ctx.get(dcache.request.data)
            for i in range(4):
                if sel & (1 << i):
                    mask = 0xff << (8 * i)
                    value = (value & ~mask) | (data & mask)

        return value

    def flush(self, ctx):
        """Write every dirty data cache line back to main memory."""
        dcache = self.dut.dcache
        config = self.config
        for way in range(config.ways):
            for index in range(config.sets):
                if ctx.get(dcache.status[way].data[index]) != LineStatus.DIRTY.value:
                    continue
                tag = ctx.get(dcache.tags[way].data[index])
                addr = (tag * config.sets + index) * config.line_bytes
                self.memory.write_line(addr, ctx.get(dcache.lines[way].data[index]))

    def cache_stats(self, ctx, cache):
        return CacheStats(
            hits=ctx.get(cache.hits),
            misses=ctx.get(cache.misses),
            writebacks=ctx.get(cache.writebacks),
        )

    def finish(self, ctx):
        self.flush(ctx)

        cpu = self.dut.cpu
        return Result(
            exit_code=self.memory.exit_code,
            cycles=self.cycles,
            instret=ctx.get(cpu.instret),
            console=list(self.memory.console),
            registers=[ctx.get(r) for r in cpu.regfile.registers],
            icache=self.cache_stats(ctx, self.dut.icache),
            dcache=self.cache_stats(ctx, self.dut.dcache),
            memory=self.memory,
        )
