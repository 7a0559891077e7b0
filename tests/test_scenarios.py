import click.testing
import pytest

import rvpipe.assembler
import rvpipe.image
import rvpipe.simulation
import rvpipe.soc
from rvpipe.__main__ import cli
from rvpipe.errors import MisalignedAccess, MemoryOutOfRange, SimulationTimeout

from conftest import EXIT_FOOTER, run_program

def test_store_load(config):
    result = run_program("""
    addi x1, x0, 5
    addi x2, x0, 7
    add x3, x1, x2
    sw x3, 0(x0)
    lw x4, 0(x0)
    """, config=config)

    assert result.exit_code == 0
    assert result.register(3) == 12
    assert result.register(4) == 12
    assert result.memory.read(0) == 12

def test_taken_branch_annuls(config):
    # beq jumps over the next two instructions
    result = run_program("""
    beq x0, x0, target
    addi a0, zero, 1
    addi a1, zero, 2
    target:
    addi a2, zero, 3
    """, config=config)

    assert result.register(10) == 0
    assert result.register(11) == 0
    assert result.register(12) == 3

def test_console_and_exit(config):
    result = run_program("""
    li t0, 0x40000000
    li a0, 65
    sw a0, 0(t0)
    li t1, 0x40001000
    sw zero, 0(t1)
    """, config=config, footer=False)

    assert result.console_text == 'A'
    assert result.exit_code == 0

def test_exit_status():
    result = run_program("""
    li t1, 0x40001000
    li a0, -7
    sw a0, 0(t1)
    li a1, 1
    """, footer=False)

    assert result.exit_code == 0xffff_fff9

ALIASING = """
    li t0, 0x10000
    li t1, 0x11000
    li t2, 4
    loop:
    lw a0, 0(t0)
    lw a1, 0(t1)
    addi t2, t2, -1
    bnez t2, loop
"""

@pytest.mark.parametrize('ways, hits, misses', [(1, 0, 8), (2, 6, 2)])
def test_associativity(ways, hits, misses):
    # 0x10000 and 0x11000 share a set with 64 sets of 64 bytes
    config = rvpipe.soc.Config(ways=ways, sets=64, line_words=16)
    result = run_program(ALIASING, config=config)

    assert (result.dcache.hits, result.dcache.misses) == (hits, misses)
    assert result.dcache.writebacks == 0

def test_stats(config):
    result = run_program("""
    li a0, 0
    li a1, 100
    loop:
    addi a0, a0, 1
    bne a0, a1, loop
    """, config=config)

    # li, li, 100 loop iterations, then some of the exit sequence
    assert 2 + 200 < result.instret <= 2 + 200 + 3
    assert result.cycles > result.instret
    assert result.cpi == result.cycles / result.instret
    assert result.icache.misses >= 1
    assert result.icache.hits > 100
    assert 'cycles:' in result.format_summary()
    assert 'x10 a0   = 0x00000064' in result.format_registers()

def test_deterministic(config):
    results = [run_program(ALIASING, config=config) for _ in range(2)]
    a, b = results
    assert (a.cycles, a.instret, a.icache, a.dcache) == (b.cycles, b.instret, b.icache, b.dcache)

def test_latency_costs_cycles():
    fast = run_program(ALIASING, config=rvpipe.soc.Config(fill_latency=1, word_latency=0))
    slow = run_program(ALIASING, config=rvpipe.soc.Config(fill_latency=20, word_latency=2))
    assert fast.instret == slow.instret
    assert slow.cycles > fast.cycles

def test_arguments():
    result = run_program("""
    li t0, 0x40003000
    lw a0, 0(t0)
    lw a1, 0(t0)
    lw a2, 0(t0)
    """, arguments=[5, 0xffff_ffff])

    assert [result.register(r) for r in (10, 11, 12)] == [5, 0xffff_ffff, 0]

def test_memory_top():
    # the last byte and the last word below 16 MiB
    result = run_program("""
    li t0, 0xffffff
    li a0, 0xa5
    sb a0, 0(t0)
    lbu a1, 0(t0)
    li t1, 0xfffffc
    li a2, 0x12345678
    sw a2, 0(t1)
    lw a3, 0(t1)
    """)

    assert result.register(11) == 0xa5
    assert result.register(13) == 0x1234_5678
    assert result.memory.read(0xffff_fc) == 0x1234_5678

class Peeks(rvpipe.simulation.Simulation):
    """Peeks at some words of memory each time a label is about to retire."""

    def __init__(self, image, labels, addrs, **kwargs):
        self.labels = labels
        self.addrs = addrs
        self.seen = []
        super().__init__(image, **kwargs)

    async def testbench(self, ctx):
        for label in self.labels:
            await self.advance_until(ctx, label)
            self.seen.append(tuple(self.peek(ctx, self.resolve(addr)) for addr in self.addrs))

        await self.run_to_exit(ctx)
        self.result = self.finish(ctx)

def test_checkpoint_before_store(config):
    # a store seen from its own checkpoint has not happened yet, but
    # one still filling its line when a later checkpoint fires has
    image = rvpipe.assembler.assemble("""
    la t0, buf
    li t1, 0x8000
    li a0, 1
    li a1, 2
    first:
    sw a0, 0(t0)
    second:
    sw a1, 0(t0)
    third:
    sw a0, 0(t1)
    fourth:
    nop
    """ + EXIT_FOOTER + """
    .bss
    buf:
    .word 0
    """)

    sim = Peeks(image, ['first', 'second', 'third', 'fourth'], ['buf', 0x8000], config=config)
    result = sim.run()

    assert sim.seen == [(0, 0), (1, 0), (2, 0), (2, 1)]
    assert result.memory.read(image.symbols['buf']) == 2
    assert result.memory.read(0x8000) == 1

ENTRY = """
    li a0, 99
    j exit
    _start:
    li a0, 7
    exit:
    li t6, 0x40001000
    sw a0, 0(t6)
    hang:
    j hang
"""

def test_reset_pc_from_entry():
    image = rvpipe.assembler.assemble(ENTRY)
    assert image.entry == image.symbols['_start'] != 0

    assert rvpipe.simulation.Simulation(image).run().exit_code == 7

    config = rvpipe.soc.Config(reset_pc=0)
    assert rvpipe.simulation.Simulation(image, config=config).run().exit_code == 99

def test_stack_pointer():
    result = run_program('nop', config=rvpipe.soc.Config(mem_size=0x10000))
    assert result.register(2) == 0x10000

def run_fault(source):
    image = rvpipe.assembler.assemble(source)
    sim = rvpipe.simulation.Simulation(image, max_cycles=5000)
    return image, sim

@pytest.mark.parametrize('source, addr', [
    ('lw a0, 2(zero)', 2),
    ('sh a0, 1(zero)', 1),
    ('lhu a0, 3(zero)', 3),
])
def test_misaligned(source, addr):
    image, sim = run_fault('li a0, 1\nbad:\n' + source + '\nli a1, 2\n')
    with pytest.raises(MisalignedAccess) as info:
        sim.run()

    assert info.value.addr == addr
    assert info.value.pc == image.symbols['bad']

@pytest.mark.parametrize('source, addr', [
    ('lw a0, 0(t0)', 0x200_0000),
    ('sb a0, 4(t0)', 0x200_0004),
    ('sw a0, -4(t1)', 0x4000_0ffc),
    ('sb a0, 0(t2)', 0x100_0000),
    ('lhu a0, 0(t2)', 0x100_0000),
])
def test_out_of_range(source, addr):
    image, sim = run_fault('li t0, 0x2000000\nli t1, 0x40001000\nli t2, 0x1000000\nbad:\n' + source)
    with pytest.raises(MemoryOutOfRange) as info:
        sim.run()

    assert info.value.addr == addr
    assert info.value.pc == image.symbols['bad']

def test_bad_fetch():
    image, sim = run_fault('li t0, 0x2000000\njr t0\n')
    with pytest.raises(MemoryOutOfRange) as info:
        sim.run()
    assert info.value.pc == 0x200_0000

def test_timeout():
    image = rvpipe.assembler.assemble('spin:\nj spin\n')
    sim = rvpipe.simulation.Simulation(image, max_cycles=300)
    with pytest.raises(SimulationTimeout) as info:
        sim.run()
    assert info.value.cycle == 300

def test_bad_config():
    with pytest.raises(ValueError):
        rvpipe.soc.Config(ways=3).validate()
    with pytest.raises(ValueError):
        rvpipe.soc.Config(sets=48).validate()
    with pytest.raises(ValueError):
        rvpipe.soc.Config(mem_size=0x8000_0000).validate()

HELLO = """
    li t0, 0x40000000
    la t1, message
loop:
    lbu a0, 0(t1)
    beqz a0, done
    sw a0, 0(t0)
    addi t1, t1, 1
    j loop
done:
    li t2, 0x40001000
    li a0, 3
    sw a0, 0(t2)
hang:
    j hang

    .data
message:
    .asciz "hello\\n"
"""

def test_cli_run(tmp_path):
    source = tmp_path / 'hello.s'
    source.write_text(HELLO)
    dump = tmp_path / 'memory.vmh'

    runner = click.testing.CliRunner()
    result = runner.invoke(cli, ['run', '--ways', '2', '--sets', '8', '--dump-regs', '--dump-memory', str(dump), str(source)])

    assert result.exit_code == 3, result.output
    assert 'hello\n' in result.output
    assert 'exit code:    3' in result.output

    memory = rvpipe.image.Image.from_vmh_file(str(dump))
    assert b'hello\n\x00' in memory.flat

def test_cli_run_fault(tmp_path):
    source = tmp_path / 'bad.s'
    source.write_text('lw a0, 1(zero)\n')

    runner = click.testing.CliRunner()
    result = runner.invoke(cli, ['run', str(source)])
    assert result.exit_code == 1
    assert 'misaligned' in result.output

def test_cli_reset_pc(tmp_path):
    source = tmp_path / 'entry.s'
    source.write_text(ENTRY)

    runner = click.testing.CliRunner()
    assert runner.invoke(cli, ['run', str(source)]).exit_code == 7
    assert runner.invoke(cli, ['run', '--reset-pc', '0', str(source)]).exit_code == 99

    result = runner.invoke(cli, ['run', '--reset-pc', '0x2', str(source)])
    assert result.exit_code == 2
    assert 'word aligned' in result.output

def test_cli_assemble(tmp_path):
    source = tmp_path / 'hello.s'
    source.write_text(HELLO)
    output = tmp_path / 'hello.vmh'

    runner = click.testing.CliRunner()
    result = runner.invoke(cli, ['assemble', '-o', str(output), str(source)])
    assert result.exit_code == 0, result.output

    image = rvpipe.image.Image.from_vmh_file(str(output))
    expected = rvpipe.assembler.assemble(HELLO)
    assert image.flat[:expected.size] == expected.flat

def test_cli_header():
    runner = click.testing.CliRunner()
    result = runner.invoke(cli, ['header'])
    assert result.exit_code == 0
    assert '0x40001000' in result.output
    assert 'RAM_SIZE' in result.output
