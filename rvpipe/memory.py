import collections
import enum
import struct

from rvpipe.errors import MisalignedAccess, MemoryOutOfRange, CacheProtocolViolation
from rvpipe.instruction import CONSOLE_BYTE, CONSOLE_INT, EXIT, ARGUMENT

def unpack_words(data):
    # little endian, the last word zero padded
    data = bytes(data) + bytes(-len(data) % 4)
    return list(x[0] for x in struct.iter_unpack('<I', data))

def to_signed(value, width=32):
    value &= (1 << width) - 1
    if value & (1 << (width - 1)):
        value -= 1 << width
    return value

class MainMemory:
    """Byte addressable, little endian backing store and devices.

    This is the Python side of the memory hierarchy. Caches talk to it
    one line at a time through a `MemoryPort`, and device addresses
    reach it one word at a time, uncached.

    Parameters
    ----------
    size (integer): size of the store in bytes.
    line_words (integer): words in one cache line.
    fill_latency (integer): cycles for the first word of a line.
    word_latency (integer): cycles for each extra word of a line.
    arguments (iterable of integers): words returned by reads from the
      argument address, in order.
    console (text file): optional file to stream console output to.
    """

    def __init__(self, size=16 * 1024 * 1024, line_words=16, fill_latency=10, word_latency=1, arguments=(), console=None):
        self.size = size
        self.line_words = line_words
        self.fill_latency = fill_latency
        self.word_latency = word_latency

        self.data = bytearray(size)

        self.arguments = collections.deque(arguments)
        self.console = []
        self.console_file = console
        self.exit_code = None

    @property
    def line_bytes(self):
        return 4 * self.line_words

    @property
    def latency(self):
        """Cycles for one line access."""
        return self.fill_latency + self.word_latency * (self.line_words - 1)

    @property
    def exited(self):
        return self.exit_code is not None

    @property
    def console_text(self):
        return ''.join(str(item) for item in self.console)

    def check(self, addr, size):
        if addr % size != 0:
            raise MisalignedAccess('misaligned {}-byte access'.format(size), addr=addr)
        if addr < 0 or addr + size > self.size:
            raise MemoryOutOfRange('{}-byte access outside main memory'.format(size), addr=addr)

    def read(self, addr, size=4):
        if size not in (1, 2, 4):
            raise ValueError('unsupported access size: {}'.format(size))
        self.check(addr, size)
        return int.from_bytes(self.data[addr:addr + size], 'little')

    def write(self, addr, value, size=4):
        if size not in (1, 2, 4):
            raise ValueError('unsupported access size: {}'.format(size))
        self.check(addr, size)
        value &= (1 << (8 * size)) - 1
        self.data[addr:addr + size] = value.to_bytes(size, 'little')

    def read_line(self, addr):
        self.check(addr, self.line_bytes)
        return int.from_bytes(self.data[addr:addr + self.line_bytes], 'little')

    def write_line(self, addr, value):
        self.check(addr, self.line_bytes)
        self.data[addr:addr + self.line_bytes] = value.to_bytes(self.line_bytes, 'little')

    def load(self, addr, data):
        """Copy an image chunk into the store."""
        if addr < 0 or addr + len(data) > self.size:
            raise MemoryOutOfRange('image chunk of {} bytes does not fit'.format(len(data)), addr=addr)
        self.data[addr:addr + len(data)] = data

    def device_read(self, addr):
        if addr == ARGUMENT:
            if self.arguments:
                return self.arguments.popleft() & 0xffff_ffff
            return 0

        # write-only devices read as zero
        if addr in (CONSOLE_BYTE, CONSOLE_INT, EXIT):
            return 0

        raise MemoryOutOfRange('read from unmapped device', addr=addr)

    def device_write(self, addr, value):
        value &= 0xffff_ffff

        if addr == CONSOLE_BYTE:
            self.emit(chr(value & 0xff))
        elif addr == CONSOLE_INT:
            self.emit(to_signed(value))
        elif addr == EXIT:
            self.exit_code = value
        elif addr == ARGUMENT:
            pass
        else:
            raise MemoryOutOfRange('write to unmapped device', addr=addr)

    def emit(self, item):
        self.console.append(item)
        if self.console_file is not None:
            self.console_file.write(str(item))
            self.console_file.flush()

class PortState(enum.Enum):
    IDLE = 0
    BUSY = 1
    RESPONDING = 2

class MemoryPort:
    """Services one line-granular memory bus from a testbench.

    Each cycle runs as `drive()`, then `sample()` while the design
    settles, then a clock tick, then `advance()`. One request is
    accepted at a time. Line accesses take `memory.latency` cycles and
    device accesses take one, after which the response is held until
    the design takes it.
    """

    def __init__(self, name, memory, bus):
        self.name = name
        self.memory = memory
        self.bus = bus

        self.state = PortState.IDLE
        self.countdown = 0
        self.request = None
        self.response = 0

    def drive(self, ctx):
        ctx.set(self.bus.req.ready, self.state == PortState.IDLE)
        ctx.set(self.bus.resp.valid, self.state == PortState.RESPONDING)
        ctx.set(self.bus.resp.payload, self.response)

    def sample(self, ctx, cycle):
        req = self.bus.req

        if self.state == PortState.RESPONDING:
            if ctx.get(self.bus.resp.ready):
                self.state = PortState.IDLE
                self.request = None
            # the response was just presented, nothing new can be pending
            elif ctx.get(req.valid):
                self.violation(ctx, cycle)
            return

        if not ctx.get(req.valid):
            return

        if self.state != PortState.IDLE:
            self.violation(ctx, cycle)

        self.request = (
            ctx.get(req.payload.addr),
            ctx.get(req.payload.write),
            ctx.get(req.payload.uncached),
            ctx.get(req.payload.data),
        )
        addr, write, uncached, data = self.request

        if uncached:
            self.countdown = 1
        else:
            try:
                self.memory.check(addr, self.memory.line_bytes)
            except (MisalignedAccess, MemoryOutOfRange) as e:
                e.cycle = cycle
                raise
            self.countdown = self.memory.latency

        self.state = PortState.BUSY

    def advance(self, cycle):
        if self.state != PortState.BUSY:
            return

        self.countdown -= 1
        if self.countdown > 0:
            return

        addr, write, uncached, data = self.request
        try:
            if uncached and write:
                self.memory.device_write(addr, data & 0xffff_ffff)
                self.response = 0
            elif uncached:
                self.response = self.memory.device_read(addr)
            elif write:
                self.memory.write_line(addr, data)
                self.response = 0
            else:
                self.response = self.memory.read_line(addr)
        except (MisalignedAccess, MemoryOutOfRange) as e:
            e.cycle = cycle
            raise

        self.state = PortState.RESPONDING

    def violation(self, ctx, cycle):
        addr = ctx.get(self.bus.req.payload.addr)
        raise CacheProtocolViolation('{}: new request while one is outstanding'.format(self.name), addr=addr, cycle=cycle)
