#!/usr/bin/env python3

import concurrent.futures
import os
import sys
import traceback

import rvpipe.image
import rvpipe.simulation
import rvpipe.soc
import rvpipe.test
import rvpipe.test.pipeline
import rvpipe.test.rv32i
from rvpipe.errors import SimulationError

import amaranth as am
import amaranth.back.verilog

import click
import tqdm

TEST_CONFIGS = [
    rvpipe.soc.Config(ways=1),
    rvpipe.soc.Config(ways=2, sets=32),
]

def config_options(f):
    defaults = rvpipe.soc.Config()
    options = [
        click.option('--ways', type=click.Choice(['1', '2']), default=str(defaults.ways), help='cache associativity'),
        click.option('--sets', type=int, default=defaults.sets, show_default=True),
        click.option('--line-words', type=int, default=defaults.line_words, show_default=True),
        click.option('--fill-latency', type=int, default=defaults.fill_latency, show_default=True),
        click.option('--word-latency', type=int, default=defaults.word_latency, show_default=True),
        click.option('--mem-size', type=int, default=defaults.mem_size, show_default=True),
        click.option('--reset-pc', help='first address fetched, default the image entry point'),
    ]
    for option in reversed(options):
        f = option(f)
    return f

def make_config(ways, sets, line_words, fill_latency, word_latency, mem_size, reset_pc):
    if reset_pc is not None:
        reset_pc = parse_int(reset_pc) & 0xffff_ffff

    config = rvpipe.soc.Config(
        ways=int(ways),
        sets=sets,
        line_words=line_words,
        fill_latency=fill_latency,
        word_latency=word_latency,
        mem_size=mem_size,
        reset_pc=reset_pc,
    )

    try:
        return config.validate()
    except ValueError as e:
        raise click.BadParameter(str(e))

def parse_int(value):
    try:
        return int(value, 0)
    except ValueError:
        raise click.BadParameter('not an integer: {}'.format(value))

@click.group()
def cli():
    pass

@cli.command()
@config_options
@click.option('-a', '--arg', 'arguments', multiple=True, help='word returned by the argument device, in order')
@click.option('--max-cycles', type=int, default=rvpipe.simulation.Simulation.MAX_CYCLES, show_default=True)
@click.option('--vcd', type=click.File('w'), help='write a waveform trace')
@click.option('--dump-regs', is_flag=True)
@click.option('--dump-memory', type=click.Path(dir_okay=False, writable=True), help='write final memory as Verilog hex')
@click.option('--report-unsupported', is_flag=True)
@click.argument('images', nargs=-1, required=True)
def run(ways, sets, line_words, fill_latency, word_latency, mem_size, reset_pc, arguments, max_cycles, vcd, dump_regs, dump_memory, report_unsupported, images):
    config = make_config(ways, sets, line_words, fill_latency, word_latency, mem_size, reset_pc)
    arguments = [parse_int(a) & 0xffff_ffff for a in arguments]

    echo = lambda *args: click.echo(' '.join(args), err=True)
    try:
        image = rvpipe.image.Image.with_autodetect(*images, echo=echo)
    except ValueError as e:
        raise click.ClickException(str(e))

    sim = rvpipe.simulation.Simulation(
        image,
        config=config,
        arguments=arguments,
        console=sys.stdout,
        max_cycles=max_cycles,
        report_unsupported=report_unsupported,
    )

    try:
        result = sim.run(output=vcd)
    except SimulationError as e:
        raise click.ClickException(str(e))

    click.echo(err=True)
    click.echo(result.format_summary(), err=True)
    if dump_regs:
        click.echo(result.format_registers(), err=True)
    if dump_memory:
        rvpipe.image.Image.from_memory(result.memory).dump_vmh(dump_memory)

    sys.exit(result.exit_code & 0xff)

@cli.command()
@click.option('-o', '--output', type=click.File('w'), default='-')
@click.option('--origin', default='0', help='address of the first section')
@click.argument('sources', nargs=-1, required=True)
def assemble(output, origin, sources):
    try:
        image = rvpipe.image.Image.from_source_files(*sources, origin=parse_int(origin))
    except ValueError as e:
        raise click.ClickException(str(e))
    output.write(image.vmh())

@cli.command()
@click.option('-c', '--config-name')
@click.option('-t', '--test-name')
def test(config_name, test_name):
    total = 0
    fails = []
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=os.cpu_count())
    for config in TEST_CONFIGS:
        name = config.name
        if config_name and name != config_name:
            continue

        print()
        print(name)
        tests = list(rvpipe.test.ProgramTest.iter_tests(config, filter=lambda t: test_name is None or t.__name__ == test_name))
        with tqdm.tqdm(total=len(tests), unit='t') as pbar:
            results = [executor.submit(lambda t: t.run(), test) for test in tests]
            for test, result in zip(tests, results):
                pbar.desc = test.name
                pbar.update(0)

                try:
                    result.result()
                except Exception:
                    fails.append((name, test.name))
                    print()
                    print()
                    print('!!! ', name, test.name)
                    traceback.print_exc()
                    print()

                total += 1
                pbar.update(1)

            pbar.desc = ''
            pbar.update(0)

    print()
    print('{} tests, {} failures.'.format(total, len(fails)))
    for name, test_name in fails:
        print(' - {} {} failed'.format(name, test_name))

    if fails:
        sys.exit(1)

@cli.command()
@config_options
@click.option('-o', '--output', type=click.File('w'), default='-')
def verilog(ways, sets, line_words, fill_latency, word_latency, mem_size, reset_pc, output):
    top = rvpipe.soc.Soc(make_config(ways, sets, line_words, fill_latency, word_latency, mem_size, reset_pc))
    output.write(am.back.verilog.convert(top, name='rvpipe'))

@cli.command()
@click.option('--mem-size', type=int, default=rvpipe.soc.Config().mem_size, show_default=True)
@click.option('-o', '--output', type=click.File('w'), default='-')
def memory_x(mem_size, output):
    soc = rvpipe.soc.Soc(rvpipe.soc.Config(mem_size=mem_size))
    output.write(soc.generate_memory_x())

@cli.command()
@click.option('--mem-size', type=int, default=rvpipe.soc.Config().mem_size, show_default=True)
@click.option('-o', '--output', type=click.File('w'), default='-')
def header(mem_size, output):
    soc = rvpipe.soc.Soc(rvpipe.soc.Config(mem_size=mem_size))
    output.write(soc.generate_header())

if __name__ == '__main__':
    cli()
