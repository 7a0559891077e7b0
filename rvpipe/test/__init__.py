import rvpipe.assembler
import rvpipe.instruction
import rvpipe.simulation

class ProgramTest(rvpipe.simulation.Simulation):
    """An assembly program plus what it should do.

    CHECKPOINTS is a list of (label, {name: value}) pairs, checked in
    order, each time the instruction at the label is about to retire.
    Names are register names (`a0`, `sp`, ...), `memory.<label>` or
    `memory.<address>` for a word of memory, or attributes of the cpu.

    If any of EXPECT, CONSOLE or EXIT is set, the program is also run
    until it exits, and then EXPECT is checked like a checkpoint,
    CONSOLE against the console output and EXIT against the exit code.
    """

    HEADER = """
    .globl _reset_vector
    _reset_vector:
    """

    # exits with status 0 once the program runs off its end
    FOOTER = """
    .text
    _exit:
    li t6, 0x40001000
    sw zero, 0(t6)
    _hang:
    j _hang
    """

    PROGRAM = None

    CHECKPOINTS = []

    EXPECT = {}
    CONSOLE = None
    EXIT = None

    ARGUMENTS = []

    MAX_CYCLES = 100_000

    def __init__(self, config=None):
        self.image = rvpipe.assembler.assemble(self.HEADER + '\n' + self.PROGRAM + '\n' + self.FOOTER)
        self._setup_renames()
        super().__init__(self.image, config=config, arguments=self.ARGUMENTS)

    @property
    def name(self):
        return self.__class__.__name__

    @classmethod
    def iter_tests(cls, config=None, filter=None):
        for subclass in cls.__subclasses__():
            if subclass.PROGRAM and (filter is None or filter(subclass)):
                yield subclass(config=config)
            yield from subclass.iter_tests(config=config, filter=filter)

    def construct(self):
        dut = super().construct()
        dut.cpu.report_unsupported = True
        return dut

    def _setup_renames(self):
        self.renames = dict()

        for (i, r) in enumerate(rvpipe.instruction.Reg):
            assert i == r.value
            self.renames[r.name.lower()] = 'regfile.{}'.format(i)
            self.renames['x{}'.format(i)] = 'regfile.{}'.format(i)

    @property
    def runs_to_exit(self):
        return bool(self.EXPECT) or self.CONSOLE is not None or self.EXIT is not None

    def lookup(self, ctx, name):
        name = self.renames.get(name, name)
        attr = self.dut.cpu

        parts = name.split('.')

        if parts[0] == 'memory':
            return self.lookup_memory(ctx, *parts[1:])

        for part in parts:
            n = None
            try:
                n = int(part)
            except ValueError:
                pass

            if n is None:
                attr = getattr(attr, part)
            else:
                attr = attr[n]

        value = ctx.get(attr)
        return value

    def lookup_memory(self, ctx, name):
        addr = None
        try:
            addr = int(name, 0)
        except ValueError:
            addr = self.resolve(name)

        return self.peek(ctx, addr)

    async def testbench(self, ctx):
        for addr_or_symbol, checks in self.CHECKPOINTS:
            await self.advance_until(ctx, addr_or_symbol)
            self.test_checkpoint(ctx, checks)

        if self.runs_to_exit:
            await self.run_to_exit(ctx)
            self.test_checkpoint(ctx, self.EXPECT)
            self.result = self.finish(ctx)
            self.test_result(self.result)

    def test_checkpoint(self, ctx, checks):
        for name, value in checks.items():
            self.assert_eq(ctx, name, value)

    def test_result(self, result):
        if self.CONSOLE is not None and result.console_text != self.CONSOLE:
            raise RuntimeError('bad console output (expected {!r}, got {!r})'.format(self.CONSOLE, result.console_text))
        if self.EXIT is not None and result.exit_code != self.EXIT:
            raise RuntimeError('bad exit code (expected {}, got {})'.format(self.EXIT, result.exit_code))

    def assert_eq(self, ctx, name, value):
        real = self.lookup(ctx, name)
        if value != real:
            raise RuntimeError('bad value for {} (expected {}, got {})'.format(name, hex(value), hex(real)))
