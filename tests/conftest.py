import amaranth as am
import amaranth.sim
import pytest

import rvpipe.assembler
import rvpipe.simulation
import rvpipe.soc

# runs off the end of a program with exit status 0
EXIT_FOOTER = """
    li t6, 0x40001000
    sw zero, 0(t6)
    _hang:
    j _hang
"""

CONFIGS = [
    rvpipe.soc.Config(ways=1),
    rvpipe.soc.Config(ways=2),
    rvpipe.soc.Config(ways=1, sets=4, line_words=4, fill_latency=3),
    rvpipe.soc.Config(ways=2, sets=4, line_words=4, fill_latency=3),
]

def simulate(dut, testbench, clocked=True):
    sim = am.sim.Simulator(dut)
    if clocked:
        sim.add_clock(1e-6)
    sim.add_testbench(testbench)
    sim.run()

def run_program(source, config=None, footer=True, **kwargs):
    if footer:
        source += EXIT_FOOTER
    image = rvpipe.assembler.assemble(source)
    sim = rvpipe.simulation.Simulation(image, config=config, **kwargs)
    return sim.run()

@pytest.fixture(params=CONFIGS, ids=lambda c: c.name)
def config(request):
    return request.param
