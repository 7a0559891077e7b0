import dataclasses

import amaranth as am
import amaranth.lib.wiring

import rvpipe.instruction
from rvpipe.cache import Cache, DeviceBypass, memory_bus
from rvpipe.cpu import Cpu

@dataclasses.dataclass
class Config:
    # 1 for direct mapped, 2 for two-way set associative
    ways: int = 1
    sets: int = 64
    line_words: int = 16

    # main memory timing, in cycles
    fill_latency: int = 10
    word_latency: int = 1

    mem_size: int = 16 * 1024 * 1024

    # None starts at the entry point of the loaded image
    reset_pc: int = None

    @property
    def name(self):
        if self.ways == 1:
            kind = 'direct'
        else:
            kind = '{}way'.format(self.ways)
        return '{}-{}x{}'.format(kind, self.sets, self.line_words)

    @property
    def line_bytes(self):
        return 4 * self.line_words

    @property
    def latency(self):
        return self.fill_latency + self.word_latency * (self.line_words - 1)

    def validate(self):
        if self.ways not in (1, 2):
            raise ValueError('ways must be 1 or 2, not {}'.format(self.ways))
        for name in ['sets', 'line_words']:
            value = getattr(self, name)
            if value < 1 or value & (value - 1):
                raise ValueError('{} must be a power of two, not {}'.format(name, value))
        if self.fill_latency < 1 or self.word_latency < 0:
            raise ValueError('bad memory latency: {} + {}'.format(self.fill_latency, self.word_latency))

        # devices live above main memory
        if self.mem_size % self.line_bytes != 0 or self.mem_size > min(rvpipe.instruction.MMIO_ADDRESSES):
            raise ValueError('bad memory size: 0x{:x}'.format(self.mem_size))
        if self.reset_pc is not None and self.reset_pc % 4 != 0:
            raise ValueError('reset pc must be word aligned: 0x{:x}'.format(self.reset_pc))

        return self

class Soc(am.lib.wiring.Component):
    """The pipeline plus its instruction and data caches.

    Main memory stays outside the design: `imem` and `dmem` are the
    line-granular buses that a testbench (or real memory controller)
    services.
    """

    def __init__(self, config=None):
        if config is None:
            config = Config()
        config.validate()

        super().__init__({
            'imem': am.lib.wiring.Out(memory_bus(config.line_words)),
            'dmem': am.lib.wiring.Out(memory_bus(config.line_words)),
        })

        self.config = config

        self.cpu = Cpu(mem_size=config.mem_size, reset_pc=config.reset_pc or 0)
        self.icache = Cache(ways=config.ways, sets=config.sets, line_words=config.line_words)
        self.dcache = Cache(ways=config.ways, sets=config.sets, line_words=config.line_words)
        self.dport = DeviceBypass(self.dcache, config.mem_size)

    def elaborate(self, platform):
        m = am.Module()

        m.submodules.cpu = self.cpu
        m.submodules.icache = self.icache
        m.submodules.dport = self.dport

        am.lib.wiring.connect(m, self.cpu.ibus, self.icache.bus)
        am.lib.wiring.connect(m, self.cpu.dbus, self.dport.bus)

        am.lib.wiring.connect(m, am.lib.wiring.flipped(self.imem), self.icache.mem)
        am.lib.wiring.connect(m, am.lib.wiring.flipped(self.dmem), self.dport.mem)

        return m

    @property
    def debug_traces(self):
        t = self.cpu.debug_traces.copy()

        for cache in [self.icache, self.dcache]:
            t += [
                cache.state.as_value(),
                cache.request.as_value(),
                cache.hit,
                cache.miss,
            ]

        t += [self.dport.state.as_value()]

        return t

    def generate_memory_x(self):
        memory_x = 'MEMORY\n{\n'
        memory_x += '    {} ({}) : ORIGIN = 0x{:x}, LENGTH = {}\n'.format(
            'RAM',
            'rwx',
            0,
            self.config.mem_size,
        )
        memory_x += '}\n'

        memory_x += '\n'

        for region in ['TEXT', 'RODATA', 'DATA', 'BSS', 'HEAP', 'STACK']:
            memory_x += 'REGION_ALIAS("REGION_{}", RAM);\n'.format(region)

        return memory_x

    def generate_header(self):
        h = ''
        h += '#ifndef __RVPIPE_H_INCLUDED\n'
        h += '#define __RVPIPE_H_INCLUDED\n\n'

        h += '#if !defined(__ASSEMBLER__)\n'
        h += '#include <stdint.h>\n'
        h += '#endif\n\n'

        def define(name, fmt, *args, **kwargs):
            nonlocal h
            h += '#define {:<40} '.format(name) + fmt.format(*args, **kwargs) + '\n'

        define('RAM_BASE', '0x{:08x}', 0)
        define('RAM_SIZE', '0x{:x}', self.config.mem_size)
        h += '\n'

        devices = [
            ('CONSOLE_BYTE', rvpipe.instruction.CONSOLE_BYTE),
            ('CONSOLE_INT', rvpipe.instruction.CONSOLE_INT),
            ('EXIT', rvpipe.instruction.EXIT),
            ('ARGUMENT', rvpipe.instruction.ARGUMENT),
        ]
        for name, addr in devices:
            define(name + '_ADDR', '0x{:08x}', addr)
            define(name, '(*(volatile uint32_t *){}_ADDR)', name)
            h += '\n'

        h += '#endif /* __RVPIPE_H_INCLUDED */\n'
        return h
