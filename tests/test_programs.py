import pytest

import rvpipe.soc
import rvpipe.test
import rvpipe.test.pipeline
import rvpipe.test.rv32i

def all_programs(cls=rvpipe.test.ProgramTest):
    for subclass in cls.__subclasses__():
        if subclass.PROGRAM:
            yield subclass
        yield from all_programs(subclass)

PROGRAMS = sorted(all_programs(), key=lambda p: p.__name__)

# small caches, so conflicts and write backs actually happen
CONFIGS = [
    rvpipe.soc.Config(ways=1, sets=4, line_words=4, fill_latency=3),
    rvpipe.soc.Config(ways=2, sets=4, line_words=4, fill_latency=3),
]

@pytest.mark.parametrize('config', CONFIGS, ids=lambda c: c.name)
@pytest.mark.parametrize('program', PROGRAMS, ids=lambda p: p.__name__)
def test_program(program, config):
    program(config=config).run()

@pytest.mark.parametrize('program', [rvpipe.test.rv32i.ADD, rvpipe.test.pipeline.Sum], ids=lambda p: p.__name__)
def test_program_default_config(program):
    program().run()
