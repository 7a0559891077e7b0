import io
import re

import elftools.common.exceptions
import elftools.elf.elffile
import elftools.elf.sections

from rvpipe.memory import unpack_words

VMH_COMMENT_RE = re.compile(r'//.*$|#.*$')

class Image:
    """An initial memory image: byte chunks at addresses, plus symbols."""

    def __init__(self, chunks=None, symbols=None, entry=0):
        self.chunks = []
        self.symbols = dict(symbols or {})
        self.entry = entry

        for addr, data in chunks or []:
            self.add(addr, data)

    def add(self, addr, data):
        if addr < 0:
            raise ValueError('negative image address: {}'.format(addr))
        if data:
            self.chunks.append((addr, bytes(data)))

    @property
    def size(self):
        return max((addr + len(data) for addr, data in self.chunks), default=0)

    @property
    def flat(self):
        """Everything from address 0 up, with gaps zero filled."""
        flat = bytearray(self.size)
        for addr, data in self.chunks:
            flat[addr:addr + len(data)] = data
        return bytes(flat)

    @property
    def flat_words(self):
        return unpack_words(self.flat)

    def load_into(self, memory):
        for addr, data in self.chunks:
            memory.load(addr, data)

    def vmh(self):
        """Render as Verilog hex, one 32-bit word per line."""
        lines = []
        for addr, data in sorted(self.chunks):
            start = addr & ~3
            padded = bytes(addr - start) + data
            lines.append('@{:08x}'.format(start >> 2))
            for word in unpack_words(padded):
                lines.append('{:08x}'.format(word))
        return '\n'.join(lines) + '\n'

    def dump_vmh(self, fname):
        with open(fname, 'w') as f:
            f.write(self.vmh())

    @classmethod
    def from_vmh(cls, text):
        image = cls()

        addr = 0
        chunk_addr = 0
        chunk = bytearray()
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = VMH_COMMENT_RE.sub('', line).strip()
            for token in line.split():
                try:
                    if token.startswith('@'):
                        image.add(chunk_addr, chunk)
                        addr = 4 * int(token[1:], 16)
                        chunk_addr = addr
                        chunk = bytearray()
                        continue

                    word = int(token, 16)
                except ValueError:
                    raise ValueError('line {}: bad hex token {!r}'.format(lineno, token))

                if word >> 32:
                    raise ValueError('line {}: word too large: {}'.format(lineno, token))

                chunk += word.to_bytes(4, 'little')
                addr += 4

        image.add(chunk_addr, chunk)
        return image

    @classmethod
    def from_vmh_file(cls, fname):
        with open(fname, 'r', encoding='utf-8') as f:
            return cls.from_vmh(f.read())

    @classmethod
    def from_memory(cls, memory, block=64):
        """Snapshot a `MainMemory`, leaving out all-zero blocks."""
        image = cls()

        start = None
        for addr in range(0, memory.size, block):
            empty = not any(memory.data[addr:addr + block])
            if empty and start is not None:
                image.add(start, memory.data[start:addr])
                start = None
            elif not empty and start is None:
                start = addr

        if start is not None:
            image.add(start, memory.data[start:memory.size])

        return image

    @classmethod
    def from_binary_file(cls, *fnames):
        data = b''
        for fname in fnames:
            with open(fname, 'rb') as f:
                data += f.read()

        return cls([(0, data)])

    @classmethod
    def from_elf_file(cls, fname):
        with open(fname, 'rb') as f:
            return ElfData(f.read()).image()

    @classmethod
    def from_source_files(cls, *fnames, origin=0):
        import rvpipe.assembler

        source = ''
        for fname in fnames:
            with open(fname, 'r', encoding='utf-8') as f:
                source += f.read() + '\n'

        return rvpipe.assembler.assemble(source, origin=origin)

    @classmethod
    def with_autodetect(cls, *fnames, echo=None):
        """Load ELF, text (Verilog hex or assembly) or raw binaries."""

        if echo is None:
            echo = lambda *args: None

        if not fnames:
            raise ValueError('no image files given')

        # try elf first, it's the most easy to id
        fname, *_ = fnames
        with open(fname, 'rb') as f:
            elf = ElfData.is_elf(f.read())

        if elf:
            if len(fnames) > 1:
                raise ValueError('can only load at most one ELF file')
            echo('loading ELF:', *fnames)
            return cls.from_elf_file(fname)

        # are the files all valid utf-8?
        # not the best test, but it'll do
        texts = []
        try:
            for fname in fnames:
                with open(fname, 'r', encoding='utf-8') as f:
                    texts.append(f.read())
        except UnicodeDecodeError:
            texts = None

        if texts is not None:
            if all(fname.endswith(('.vmh', '.hex')) for fname in fnames):
                echo('loading Verilog hex:', *fnames)
                image = cls()
                for text in texts:
                    for addr, data in cls.from_vmh(text).chunks:
                        image.add(addr, data)
                return image

            echo('loading sources:', *fnames)
            return cls.from_source_files(*fnames)

        # just load them raw
        echo('loading binaries:', *fnames)
        return cls.from_binary_file(*fnames)

class ElfData:
    def __init__(self, data):
        self.data = data

    @staticmethod
    def is_elf(data):
        try:
            elftools.elf.elffile.ELFFile(io.BytesIO(data))
        except elftools.common.exceptions.ELFError:
            return False
        return True

    def elf(self):
        return elftools.elf.elffile.ELFFile(io.BytesIO(self.data))

    def symbols(self):
        elf = self.elf()
        symbols = {}
        for sec in elf.iter_sections():
            if not isinstance(sec, elftools.elf.sections.SymbolTableSection):
                continue
            for sym in sec.iter_symbols():
                if sym.name:
                    symbols[sym.name] = sym.entry.st_value

        return symbols

    def image(self):
        elf = self.elf()
        if elf.elfclass != 32 or elf['e_machine'] != 'EM_RISCV':
            raise ValueError('not a 32-bit RISC-V ELF file')

        image = Image(symbols=self.symbols(), entry=elf['e_entry'])
        for segment in elf.iter_segments():
            if segment['p_type'] != 'PT_LOAD':
                continue

            data = segment.data()
            # the rest of the segment (bss) is zero
            data += bytes(segment['p_memsz'] - len(data))
            image.add(segment['p_paddr'], data)

        return image
