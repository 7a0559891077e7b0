import pytest

from rvpipe.assembler import AssemblerError, UnknownSymbol, assemble, split_hi_lo

def words(source, origin=0):
    return assemble(source, origin=origin).flat_words

# checked against the GNU assembler
KNOWN = [
    ('addi a0, a1, -5', 0xffb5_8513),
    ('add a0, a1, a2', 0x00c5_8533),
    ('sub a0, a1, a2', 0x40c5_8533),
    ('srai a0, a0, 3', 0x4035_5513),
    ('sw a0, 8(sp)', 0x00a1_2423),
    ('lw a0, -4(s0)', 0xffc4_2503),
    ('lbu t0, 0(a0)', 0x0005_4283),
    ('lui a0, 0x12345', 0x1234_5537),
    ('jalr ra, 0(t0)', 0x0002_80e7),
    ('ret', 0x0000_8067),
    ('nop', 0x0000_0013),
    ('mv a0, a1', 0x0005_8513),
    ('not a0, a1', 0xfff5_c513),
    ('seqz a0, a1', 0x0015_b513),
]

@pytest.mark.parametrize('text, word', KNOWN, ids=[k[0] for k in KNOWN])
def test_encoding(text, word):
    assert words(text) == [word]

def test_branches_and_jumps():
    source = """
    top:
    beq a0, a1, later
    j top
    later:
    bnez a0, top
    """
    assert words(source) == [0x00b5_0463, 0xffdf_f06f, 0xfe05_1ce3]

def test_li():
    assert words('li a0, 42') == [0x02a0_0513]
    assert words('li a0, 0x12345678') == [0x1234_5537, 0x6785_0513]
    # the low half is negative, so the upper half rounds up
    assert words('li a0, 0x12345fff') == [0x1234_6537, 0xfff5_0513]
    assert words('li a0, -1') == [0xfff0_0513]

def test_split_hi_lo():
    for value in [0, 1, 0x7ff, 0x800, 0xfff, 0x1234_5678, 0xffff_ffff, 0x8000_0800]:
        hi, lo = split_hi_lo(value)
        assert -2048 <= lo < 2048
        assert ((hi << 12) + lo) & 0xffff_ffff == value

def test_sections():
    image = assemble("""
    _start:
    la a0, message
    nop
    .data
    count:
    .word 3, -1
    message:
    .asciz "hi\\n"
    .bss
    buffer:
    .space 8
    """)

    symbols = image.symbols
    assert symbols['_start'] == 0
    assert image.entry == 0
    assert symbols['count'] == 16
    assert symbols['message'] == 24
    assert symbols['buffer'] == 32

    flat = image.flat
    assert flat[16:24] == b'\x03\x00\x00\x00\xff\xff\xff\xff'
    assert flat[24:28] == b'hi\n\x00'
    assert len(flat) == 40

def test_la_is_pc_relative():
    image = assemble("""
    .org 0x100
    here:
    la a0, there
    .org 0x2000
    there:
    """, origin=0x1000)
    auipc, addi = image.flat_words[0x100 // 4 + 0x400:0x100 // 4 + 0x402]
    # auipc a0, 0x2 ; addi a0, a0, -0x100
    assert auipc == 0x0000_2517
    assert addi == 0xf005_0513

def test_expressions():
    image = assemble("""
    .equ BASE, 0x1000
    .set COUNT, (BASE >> 4) + 2
    .word BASE | 3, COUNT * 2, ~0 & 0xff, 'A', %hi(0x12345fff), %lo(0x12345fff)
    here:
    .word . - here
    """)
    assert image.flat_words == [0x1003, 0x204, 0xff, 0x41, 0x12346, 0xffff_ffff, 0]

def test_align():
    image = assemble("""
    .byte 1
    .align 2
    a:
    .byte 2
    .balign 8
    b:
    .half 3
    """)
    assert image.symbols['a'] == 4
    assert image.symbols['b'] == 8

def test_comments():
    assert words('addi a0, a0, 1 # increment\n// nothing here\nnop ; also a comment') == [0x0015_0513, 0x0000_0013]

@pytest.mark.parametrize('source, error', [
    ('frobnicate a0', AssemblerError),
    ('addi a0, a1', AssemblerError),
    ('addi a0, a1, 2048', AssemblerError),
    ('addi q0, a1, 1', AssemblerError),
    ('j nowhere', UnknownSymbol),
    ('x:\nx:\nnop', AssemblerError),
    ('.org 8\nnop\n.org 4', AssemblerError),
    ('.section .weird', AssemblerError),
    ('.byte 256', AssemblerError),
])
def test_errors(source, error):
    with pytest.raises(error):
        assemble(source)

def test_error_line_numbers():
    with pytest.raises(AssemblerError, match='line 3'):
        assemble('nop\nnop\nbogus a0\n')
