import re

from rvpipe.image import Image
from rvpipe.instruction import Op, Reg, Funct3Alu, Funct3Branch, Funct3Mem, Funct7Alu

# sections are laid out in this order, each aligned to this many bytes
SECTIONS = ['text', 'data', 'bss']
SECTION_ALIGN = 16

SECTION_ALIASES = {
    '.text': 'text',
    '.data': 'data',
    '.rodata': 'data',
    '.bss': 'bss',
}

REGISTERS = {}
for _r in Reg:
    REGISTERS[_r.name.lower()] = _r.value
    REGISTERS['x{}'.format(_r.value)] = _r.value

TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<number>0[xX][0-9a-fA-F_]+|0[bB][01_]+|[0-9][0-9_]*)
      | '(?P<char>\\.|[^\\'])'
      | (?P<reloc>%hi|%lo)
      | (?P<name>[A-Za-z_.$][\w.$]*)
      | (?P<op><<|>>|[-+~()*|&])
    )
""", re.VERBOSE)

MEMORY_OPERAND_RE = re.compile(r'^(?P<offset>.*)\(\s*(?P<reg>[\w]+)\s*\)$')
LABEL_RE = re.compile(r'^\s*([A-Za-z_.$][\w.$]*)\s*:')

ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '0': '\0', '\\': '\\', "'": "'", '"': '"'}

class AssemblerError(ValueError):
    def __init__(self, message, lineno=None):
        if lineno is not None:
            message = 'line {}: {}'.format(lineno, message)
        super().__init__(message)
        self.lineno = lineno

class UnknownSymbol(AssemblerError):
    pass

def sign_extend(value, bits):
    value &= (1 << bits) - 1
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value

def split_hi_lo(value):
    """Split a 32-bit value for a lui/auipc + addi pair."""
    value &= 0xffff_ffff
    lo = sign_extend(value, 12)
    hi = ((value - lo) >> 12) & 0xf_ffff
    return hi, lo

class Expression:
    """Tiny recursive descent evaluator for operand expressions."""

    def __init__(self, text, symbols, pc=None):
        self.text = text
        self.symbols = symbols
        self.pc = pc
        self.tokens = self.tokenize(text)
        self.pos = 0

    def tokenize(self, text):
        tokens = []
        pos = 0
        text = text.strip()
        while pos < len(text):
            m = TOKEN_RE.match(text, pos)
            if not m or m.end() == pos:
                raise AssemblerError('bad expression: {!r}'.format(text))
            pos = m.end()
            for kind in ['number', 'char', 'reloc', 'name', 'op']:
                if m.group(kind) is not None:
                    tokens.append((kind, m.group(kind)))
                    break
        return tokens

    def peek(self):
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return (None, None)

    def take(self, value=None):
        token = self.peek()
        if token[0] is None or (value is not None and token[1] != value):
            raise AssemblerError('bad expression: {!r}'.format(self.text))
        self.pos += 1
        return token

    def evaluate(self):
        value = self.parse_or()
        if self.pos != len(self.tokens):
            raise AssemblerError('bad expression: {!r}'.format(self.text))
        return value

    def parse_or(self):
        value = self.parse_and()
        while self.peek() == ('op', '|'):
            self.take()
            value |= self.parse_and()
        return value

    def parse_and(self):
        value = self.parse_shift()
        while self.peek() == ('op', '&'):
            self.take()
            value &= self.parse_shift()
        return value

    def parse_shift(self):
        value = self.parse_sum()
        while self.peek() in (('op', '<<'), ('op', '>>')):
            _, op = self.take()
            rhs = self.parse_sum()
            value = value << rhs if op == '<<' else value >> rhs
        return value

    def parse_sum(self):
        value = self.parse_product()
        while self.peek() in (('op', '+'), ('op', '-')):
            _, op = self.take()
            rhs = self.parse_product()
            value = value + rhs if op == '+' else value - rhs
        return value

    def parse_product(self):
        value = self.parse_unary()
        while self.peek() == ('op', '*'):
            self.take()
            value *= self.parse_unary()
        return value

    def parse_unary(self):
        kind, text = self.peek()
        if (kind, text) == ('op', '-'):
            self.take()
            return -self.parse_unary()
        if (kind, text) == ('op', '+'):
            self.take()
            return self.parse_unary()
        if (kind, text) == ('op', '~'):
            self.take()
            return ~self.parse_unary()
        return self.parse_atom()

    def parse_atom(self):
        kind, text = self.take()

        if kind == 'number':
            return int(text.replace('_', ''), 0)

        if kind == 'char':
            if text.startswith('\\'):
                return ord(ESCAPES.get(text[1], text[1]))
            return ord(text)

        if kind == 'name':
            if text == '.' and self.pc is not None:
                return self.pc
            try:
                return self.symbols[text]
            except KeyError:
                raise UnknownSymbol('unknown symbol: {}'.format(text))

        if kind == 'reloc':
            self.take('(')
            value = self.parse_or()
            self.take(')')
            hi, lo = split_hi_lo(value)
            return hi if text.endswith('hi') else lo

        if (kind, text) == ('op', '('):
            value = self.parse_or()
            self.take(')')
            return value

        raise AssemblerError('bad expression: {!r}'.format(self.text))

def split_operands(text):
    """Split on commas that are not inside parentheses or quotes."""
    operands = []
    depth = 0
    quote = None
    current = ''
    for c in text:
        if quote:
            current += c
            if c == quote and not current.endswith('\\' + quote):
                quote = None
            continue
        if c in '\'"':
            quote = c
        elif c == '(':
            depth += 1
        elif c == ')':
            depth -= 1
        elif c == ',' and depth == 0:
            operands.append(current.strip())
            current = ''
            continue
        current += c
    if current.strip():
        operands.append(current.strip())
    return operands

def strip_comment(line):
    quote = None
    for i, c in enumerate(line):
        if quote:
            if c == quote and line[i - 1] != '\\':
                quote = None
            continue
        if c in '\'"':
            quote = c
        elif c in '#;':
            return line[:i]
        elif line.startswith('//', i):
            return line[:i]
    return line

def encode_r(op, rd, funct3, rs1, rs2, funct7=0):
    return (funct7 << 25) | (rs2 << 20) | (rs1 << 15) | (funct3 << 12) | (rd << 7) | op

def encode_i(op, rd, funct3, rs1, imm):
    return ((imm & 0xfff) << 20) | (rs1 << 15) | (funct3 << 12) | (rd << 7) | op

def encode_s(op, funct3, rs1, rs2, imm):
    imm &= 0xfff
    return ((imm >> 5) << 25) | (rs2 << 20) | (rs1 << 15) | (funct3 << 12) | ((imm & 0x1f) << 7) | op

def encode_b(op, funct3, rs1, rs2, imm):
    imm &= 0x1fff
    return (
        ((imm >> 12) & 0x1) << 31
        | ((imm >> 5) & 0x3f) << 25
        | rs2 << 20
        | rs1 << 15
        | funct3 << 12
        | ((imm >> 1) & 0xf) << 8
        | ((imm >> 11) & 0x1) << 7
        | op
    )

def encode_u(op, rd, imm):
    return ((imm & 0xf_ffff) << 12) | (rd << 7) | op

def encode_j(op, rd, imm):
    imm &= 0x1f_ffff
    return (
        ((imm >> 20) & 0x1) << 31
        | ((imm >> 1) & 0x3ff) << 21
        | ((imm >> 11) & 0x1) << 20
        | ((imm >> 12) & 0xff) << 12
        | rd << 7
        | op
    )

R_TYPE = {
    'add': (Funct3Alu.ADD_SUB, Funct7Alu.NORMAL),
    'sub': (Funct3Alu.ADD_SUB, Funct7Alu.ALT),
    'sll': (Funct3Alu.SHIFT_L, Funct7Alu.NORMAL),
    'slt': (Funct3Alu.LT, Funct7Alu.NORMAL),
    'sltu': (Funct3Alu.LTU, Funct7Alu.NORMAL),
    'xor': (Funct3Alu.XOR, Funct7Alu.NORMAL),
    'srl': (Funct3Alu.SHIFT_R, Funct7Alu.NORMAL),
    'sra': (Funct3Alu.SHIFT_R, Funct7Alu.ALT),
    'or': (Funct3Alu.OR, Funct7Alu.NORMAL),
    'and': (Funct3Alu.AND, Funct7Alu.NORMAL),
}

I_TYPE = {
    'addi': Funct3Alu.ADD_SUB,
    'slti': Funct3Alu.LT,
    'sltiu': Funct3Alu.LTU,
    'xori': Funct3Alu.XOR,
    'ori': Funct3Alu.OR,
    'andi': Funct3Alu.AND,
}

SHIFTS = {
    'slli': (Funct3Alu.SHIFT_L, Funct7Alu.NORMAL),
    'srli': (Funct3Alu.SHIFT_R, Funct7Alu.NORMAL),
    'srai': (Funct3Alu.SHIFT_R, Funct7Alu.ALT),
}

LOADS = {
    'lb': Funct3Mem.BYTE,
    'lh': Funct3Mem.HALF,
    'lw': Funct3Mem.WORD,
    'lbu': Funct3Mem.BYTE_U,
    'lhu': Funct3Mem.HALF_U,
}

STORES = {
    'sb': Funct3Mem.BYTE,
    'sh': Funct3Mem.HALF,
    'sw': Funct3Mem.WORD,
}

BRANCHES = {
    'beq': Funct3Branch.EQ,
    'bne': Funct3Branch.NE,
    'blt': Funct3Branch.LT,
    'bge': Funct3Branch.GE,
    'bltu': Funct3Branch.LTU,
    'bgeu': Funct3Branch.GEU,
}

# branches against zero
ZERO_BRANCHES = {
    'beqz': 'beq',
    'bnez': 'bne',
}

FIXED = {
    'nop': encode_i(Op.OP_IMM.value, 0, Funct3Alu.ADD_SUB.value, 0, 0),
    'ret': encode_i(Op.JALR.value, 0, 0, Reg.RA.value, 0),
    'fence': 0x0ff0_000f,
    'ecall': 0x0000_0073,
    'ebreak': 0x0010_0073,
}

DATA_SIZES = {
    '.byte': 1,
    '.half': 2,
    '.word': 4,
}

IGNORED_DIRECTIVES = {'.globl', '.global', '.size'}

class Statement:
    def __init__(self, lineno, section, offset, size, mnemonic, operands):
        self.lineno = lineno
        self.section = section
        self.offset = offset
        self.size = size
        self.mnemonic = mnemonic
        self.operands = operands

class Assembler:
    """A small two pass rv32i assembler.

    Understands the base instruction set, the usual pseudo
    instructions (li, la, mv, j, ret, beqz...),
    labels, and the `.text` / `.data` / `.bss` sections with the data
    directives a test program needs. Sections are laid out one after
    another starting at `origin`.
    """

    def __init__(self, origin=0):
        self.origin = origin
        self.sources = []

    def add_source(self, source):
        self.sources.append(source)

    def assemble(self):
        lines = '\n'.join(self.sources).splitlines()

        # pass 1: sizes and label offsets
        self.constants = {}
        labels = {}
        statements = []
        offsets = {name: 0 for name in SECTIONS}
        section = 'text'

        for lineno, line in enumerate(lines, start=1):
            line = strip_comment(line)

            while True:
                m = LABEL_RE.match(line)
                if not m:
                    break
                name = m.group(1)
                if name in labels or name in self.constants:
                    raise AssemblerError('duplicate symbol: {}'.format(name), lineno)
                labels[name] = (section, offsets[section])
                line = line[m.end():]

            line = line.strip()
            if not line:
                continue

            mnemonic, *rest = line.split(None, 1)
            mnemonic = mnemonic.lower()
            operands = split_operands(rest[0] if rest else '')

            try:
                if mnemonic.startswith('.'):
                    section = self.directive(lineno, mnemonic, operands, section, offsets, statements)
                    continue

                size = self.size_of(mnemonic, operands)
            except AssemblerError as e:
                if e.lineno is None:
                    raise type(e)(str(e), lineno)
                raise

            statements.append(Statement(lineno, section, offsets[section], size, mnemonic, operands))
            offsets[section] += size

        # lay out the sections
        bases = {}
        addr = self.origin
        for name in SECTIONS:
            addr = (addr + SECTION_ALIGN - 1) & ~(SECTION_ALIGN - 1)
            bases[name] = addr
            addr += offsets[name]

        symbols = dict(self.constants)
        for name, (sec, offset) in labels.items():
            symbols[name] = bases[sec] + offset

        # pass 2: encode
        contents = {name: bytearray(offsets[name]) for name in SECTIONS}
        for st in statements:
            pc = bases[st.section] + st.offset
            try:
                data = self.encode(st, pc, symbols)
            except AssemblerError as e:
                if e.lineno is None:
                    raise type(e)(str(e), st.lineno)
                raise

            if len(data) != st.size:
                raise AssemblerError('size of {} changed between passes'.format(st.mnemonic), st.lineno)
            contents[st.section][st.offset:st.offset + st.size] = data

        image = Image(symbols=symbols, entry=symbols.get('_start', symbols.get('_reset_vector', self.origin)))
        for name in SECTIONS:
            image.add(bases[name], contents[name])

        return image

    def constant(self, text):
        return Expression(text, self.constants).evaluate()

    def directive(self, lineno, mnemonic, operands, section, offsets, statements):
        if mnemonic in IGNORED_DIRECTIVES:
            return section

        if mnemonic in SECTION_ALIASES:
            return SECTION_ALIASES[mnemonic]

        if mnemonic == '.section':
            if not operands or operands[0] not in SECTION_ALIASES:
                raise AssemblerError('unsupported section: {}'.format(' '.join(operands)))
            return SECTION_ALIASES[operands[0]]

        if mnemonic in ('.equ', '.set'):
            if len(operands) != 2:
                raise AssemblerError('{} takes a name and a value'.format(mnemonic))
            self.constants[operands[0]] = self.constant(operands[1])
            return section

        if mnemonic == '.org':
            target = self.constant(operands[0])
            if target < offsets[section]:
                raise AssemblerError('.org moves backwards to 0x{:x}'.format(target))
            offsets[section] = target
            return section

        if mnemonic in ('.align', '.balign'):
            amount = self.constant(operands[0])
            if mnemonic == '.align':
                amount = 1 << amount
            offsets[section] = (offsets[section] + amount - 1) & ~(amount - 1)
            return section

        if mnemonic in ('.space', '.zero'):
            offsets[section] += self.constant(operands[0])
            return section

        if mnemonic in DATA_SIZES:
            size = DATA_SIZES[mnemonic] * len(operands)
        elif mnemonic in ('.ascii', '.asciz'):
            size = len(self.string_bytes(mnemonic, operands))
        else:
            raise AssemblerError('unsupported directive: {}'.format(mnemonic))

        statements.append(Statement(lineno, section, offsets[section], size, mnemonic, operands))
        offsets[section] += size
        return section

    def string_bytes(self, mnemonic, operands):
        data = b''
        for operand in operands:
            if len(operand) < 2 or operand[0] != '"' or operand[-1] != '"':
                raise AssemblerError('expected a string: {}'.format(operand))
            text = re.sub(r'\\(.)', lambda m: ESCAPES.get(m.group(1), m.group(1)), operand[1:-1])
            data += text.encode('utf-8')
            if mnemonic != '.ascii':
                data += b'\0'
        return data

    def size_of(self, mnemonic, operands):
        if mnemonic == 'li':
            if len(operands) != 2:
                raise AssemblerError('li takes a register and a value')
            try:
                value = self.constant(operands[1])
            except UnknownSymbol:
                # labels aren't known yet, assume the worst
                return 8
            return 4 if -2048 <= sign_extend(value, 32) < 2048 else 8

        if mnemonic == 'la':
            return 8

        return 4

    def encode(self, st, pc, symbols):
        mnemonic = st.mnemonic
        operands = st.operands

        def expr(text):
            return Expression(text, symbols, pc=pc).evaluate()

        if mnemonic in DATA_SIZES:
            size = DATA_SIZES[mnemonic]
            data = b''
            for operand in operands:
                value = expr(operand)
                if not -(1 << (8 * size - 1)) <= value < (1 << (8 * size)):
                    raise AssemblerError('value does not fit in {} bytes: {}'.format(size, operand))
                data += (value & ((1 << (8 * size)) - 1)).to_bytes(size, 'little')
            return data

        if mnemonic in ('.ascii', '.asciz'):
            return self.string_bytes(mnemonic, operands)

        words = self.encode_instruction(mnemonic, operands, pc, expr)
        return b''.join(w.to_bytes(4, 'little') for w in words)

    def encode_instruction(self, mnemonic, operands, pc, expr):
        def arity(*counts):
            if len(operands) not in counts:
                raise AssemblerError('{} takes {} operands, got {}'.format(mnemonic, ' or '.join(str(c) for c in counts), len(operands)))

        def reg(text):
            try:
                return REGISTERS[text.lower()]
            except KeyError:
                raise AssemblerError('unknown register: {}'.format(text))

        def imm(text, bits, signed=True):
            value = expr(text)
            if signed:
                lo, hi = -(1 << (bits - 1)), 1 << (bits - 1)
            else:
                lo, hi = 0, 1 << bits
            if not lo <= value < hi:
                raise AssemblerError('immediate out of range: {} = {}'.format(text, value))
            return value

        def offset(text, bits):
            value = expr(text) - pc
            if value & 1 or not -(1 << (bits - 1)) <= value < (1 << (bits - 1)):
                raise AssemblerError('bad jump offset to {}: {}'.format(text, value))
            return value

        def memory(text):
            m = MEMORY_OPERAND_RE.match(text)
            if not m or m.group('reg').lower() not in REGISTERS:
                raise AssemblerError('expected offset(register): {}'.format(text))
            off = m.group('offset').strip() or '0'
            return imm(off, 12), reg(m.group('reg'))

        def addi(rd, rs1, value):
            return encode_i(Op.OP_IMM.value, rd, Funct3Alu.ADD_SUB.value, rs1, value)

        def branch(name, rs1, rs2, target):
            return encode_b(Op.BRANCH.value, BRANCHES[name].value, rs1, rs2, offset(target, 13))

        def jal(rd, target):
            return encode_j(Op.JAL.value, rd, offset(target, 21))

        def jalr(rd, rs1, value):
            return encode_i(Op.JALR.value, rd, 0, rs1, value)

        if mnemonic in FIXED:
            arity(0)
            return [FIXED[mnemonic]]

        if mnemonic in R_TYPE:
            arity(3)
            funct3, funct7 = R_TYPE[mnemonic]
            return [encode_r(Op.OP.value, reg(operands[0]), funct3.value, reg(operands[1]), reg(operands[2]), funct7.value)]

        if mnemonic in I_TYPE:
            arity(3)
            return [encode_i(Op.OP_IMM.value, reg(operands[0]), I_TYPE[mnemonic].value, reg(operands[1]), imm(operands[2], 12))]

        if mnemonic in SHIFTS:
            arity(3)
            funct3, funct7 = SHIFTS[mnemonic]
            shamt = imm(operands[2], 5, signed=False)
            return [encode_i(Op.OP_IMM.value, reg(operands[0]), funct3.value, reg(operands[1]), (funct7.value << 5) | shamt)]

        if mnemonic in LOADS:
            arity(2)
            value, base = memory(operands[1])
            return [encode_i(Op.LOAD.value, reg(operands[0]), LOADS[mnemonic].value, base, value)]

        if mnemonic in STORES:
            arity(2)
            value, base = memory(operands[1])
            return [encode_s(Op.STORE.value, STORES[mnemonic].value, base, reg(operands[0]), value)]

        if mnemonic in BRANCHES:
            arity(3)
            return [branch(mnemonic, reg(operands[0]), reg(operands[1]), operands[2])]

        if mnemonic in ZERO_BRANCHES:
            arity(2)
            return [branch(ZERO_BRANCHES[mnemonic], reg(operands[0]), 0, operands[1])]

        if mnemonic in ('lui', 'auipc'):
            arity(2)
            op = Op.LUI if mnemonic == 'lui' else Op.AUIPC
            value = expr(operands[1])
            if not -(1 << 19) <= value < (1 << 20):
                raise AssemblerError('immediate out of range: {}'.format(operands[1]))
            return [encode_u(op.value, reg(operands[0]), value)]

        if mnemonic == 'jal':
            arity(1, 2)
            if len(operands) == 1:
                return [jal(Reg.RA.value, operands[0])]
            return [jal(reg(operands[0]), operands[1])]

        if mnemonic == 'jalr':
            arity(1, 2, 3)
            if len(operands) == 1:
                return [jalr(Reg.RA.value, reg(operands[0]), 0)]
            if len(operands) == 2:
                value, base = memory(operands[1])
                return [jalr(reg(operands[0]), base, value)]
            return [jalr(reg(operands[0]), reg(operands[1]), imm(operands[2], 12))]

        if mnemonic == 'j':
            arity(1)
            return [jal(0, operands[0])]

        if mnemonic == 'jr':
            arity(1)
            return [jalr(0, reg(operands[0]), 0)]

        if mnemonic == 'mv':
            arity(2)
            return [addi(reg(operands[0]), reg(operands[1]), 0)]

        if mnemonic == 'not':
            arity(2)
            return [encode_i(Op.OP_IMM.value, reg(operands[0]), Funct3Alu.XOR.value, reg(operands[1]), -1)]

        if mnemonic == 'neg':
            arity(2)
            return [encode_r(Op.OP.value, reg(operands[0]), Funct3Alu.ADD_SUB.value, 0, reg(operands[1]), Funct7Alu.ALT.value)]

        if mnemonic == 'seqz':
            arity(2)
            return [encode_i(Op.OP_IMM.value, reg(operands[0]), Funct3Alu.LTU.value, reg(operands[1]), 1)]

        if mnemonic == 'snez':
            arity(2)
            return [encode_r(Op.OP.value, reg(operands[0]), Funct3Alu.LTU.value, 0, reg(operands[1]))]

        if mnemonic == 'li':
            arity(2)
            rd = reg(operands[0])
            value = expr(operands[1])
            if not -(1 << 31) <= value < (1 << 32):
                raise AssemblerError('value does not fit in 32 bits: {}'.format(operands[1]))
            if self.size_of('li', operands) == 4:
                return [addi(rd, 0, sign_extend(value, 32))]
            hi, lo = split_hi_lo(value)
            return [encode_u(Op.LUI.value, rd, hi), addi(rd, rd, lo)]

        if mnemonic == 'la':
            arity(2)
            rd = reg(operands[0])
            hi, lo = split_hi_lo(expr(operands[1]) - pc)
            return [encode_u(Op.AUIPC.value, rd, hi), addi(rd, rd, lo)]

        raise AssemblerError('unknown instruction: {}'.format(mnemonic))

def assemble(source, origin=0):
    asm = Assembler(origin=origin)
    asm.add_source(source)
    return asm.assemble()
