import amaranth as am
import amaranth.lib.data
import amaranth.lib.enum
import amaranth.lib.memory
import amaranth.lib.stream
import amaranth.lib.wiring
import amaranth.utils

from amaranth.lib.wiring import In, Out

class CacheState(am.lib.enum.Enum, shape=2):
    READY = 0
    LOOKUP = 1
    WRITEBACK = 2
    FILL = 3

class LineStatus(am.lib.enum.Enum, shape=2):
    NOT_VALID = 0
    CLEAN = 1
    DIRTY = 2

class CacheRequest(am.lib.data.Struct):
    addr: am.unsigned(32)
    write: am.unsigned(1)
    # already shifted into its byte lanes, with sel as the byte enables
    data: am.unsigned(32)
    sel: am.unsigned(4)

def cache_bus():
    """Word-granular bus between the pipeline and a cache."""
    return am.lib.wiring.Signature({
        'req': Out(am.lib.stream.Signature(CacheRequest)),
        'resp': In(am.lib.stream.Signature(32)),
    })

def memory_request_layout(line_words):
    return am.lib.data.StructLayout({
        'addr': 32,
        'write': 1,
        # device accesses carry one word in the low bits of data
        'uncached': 1,
        'data': 32 * line_words,
    })

def memory_bus(line_words):
    """Line-granular bus between a cache and main memory.

    Writes are acknowledged with a response, whose data is ignored.
    """
    return am.lib.wiring.Signature({
        'req': Out(am.lib.stream.Signature(memory_request_layout(line_words))),
        'resp': In(am.lib.stream.Signature(32 * line_words)),
    })

def select(way, values):
    if len(values) == 1:
        return values[0]
    return am.Mux(way, values[1], values[0])

class Cache(am.lib.wiring.Component):
    """A write-back, write-allocate cache with one or two ways.

    Every request is latched in READY and resolved in LOOKUP. A hit
    answers (or performs the write) in LOOKUP and may accept the next
    request in the same cycle. A miss picks a victim, writes it back
    if it is dirty, fills the whole line from memory and then retries
    the lookup.

    Two-way caches replace an invalid way first (way 0 before way 1)
    and otherwise the least recently used way, tracked with one bit
    per set.

    Parameters
    ----------
    ways (integer): 1 for direct mapped, 2 for two-way set associative.
    sets (integer): number of sets, a power of two.
    line_words (integer): words per line, a power of two.

    Attributes
    ----------
    bus (In): word requests from the pipeline
    mem (Out): line requests to main memory
    idle (Out): high when no request is in flight
    hit, miss (Out): one-cycle strobes for each resolved lookup
    """

    def __init__(self, ways=1, sets=64, line_words=16):
        if ways not in (1, 2):
            raise ValueError('unsupported associativity: {}'.format(ways))
        for name, value in [('sets', sets), ('line_words', line_words)]:
            if value < 1 or value & (value - 1):
                raise ValueError('{} must be a power of two, not {}'.format(name, value))

        super().__init__({
            'bus': In(cache_bus()),
            'mem': Out(memory_bus(line_words)),
            'idle': Out(1),
            'hit': Out(1),
            'miss': Out(1),
        })

        self.ways = ways
        self.sets = sets
        self.line_words = line_words

        self.offset_bits = amaranth.utils.exact_log2(line_words)
        self.index_bits = amaranth.utils.exact_log2(sets)
        self.tag_bits = 32 - 2 - self.offset_bits - self.index_bits

        self.state = am.Signal(CacheState)
        self.request = am.Signal(CacheRequest)

        # per-way storage
        self.lines = [am.lib.memory.Memory(shape=32 * line_words, depth=sets, init=[]) for _ in range(ways)]
        self.tags = [am.lib.memory.Memory(shape=self.tag_bits, depth=sets, init=[]) for _ in range(ways)]
        self.status = [am.lib.memory.Memory(shape=2, depth=sets, init=[]) for _ in range(ways)]

        # the least recently used way of each set
        self.lru = am.Signal(sets)

        # memory request already handed off in WRITEBACK / FILL
        self.mem_sent = am.Signal(1)
        self.victim = am.Signal(1)
        # the next lookup is the retry after a fill
        self.refilled = am.Signal(1)

        # statistics
        self.hits = am.Signal(32)
        self.misses = am.Signal(32)
        self.writebacks = am.Signal(32)

    def split(self, addr):
        """Split a byte address into (word offset, set index, tag)."""
        word = addr[2:2 + self.offset_bits]
        index = addr[2 + self.offset_bits:2 + self.offset_bits + self.index_bits]
        tag = addr[2 + self.offset_bits + self.index_bits:]
        return word, index, tag

    def line_address(self, index, tag):
        return am.Cat(am.C(0, 2 + self.offset_bits), index, tag)

    def elaborate(self, platform):
        m = am.Module()

        line_rd = []
        line_wr = []
        tag_rd = []
        tag_wr = []
        status_rd = []
        status_wr = []
        for i in range(self.ways):
            m.submodules['lines{}'.format(i)] = self.lines[i]
            m.submodules['tags{}'.format(i)] = self.tags[i]
            m.submodules['status{}'.format(i)] = self.status[i]

            line_rd.append(self.lines[i].read_port(domain='comb'))
            line_wr.append(self.lines[i].write_port(granularity=8))
            tag_rd.append(self.tags[i].read_port(domain='comb'))
            tag_wr.append(self.tags[i].write_port())
            status_rd.append(self.status[i].read_port(domain='comb'))
            status_wr.append(self.status[i].write_port())

        req = self.request
        word, index, tag = self.split(req.addr)

        # every port looks at the set of the latched request
        for port in line_rd + line_wr + tag_rd + tag_wr + status_rd + status_wr:
            m.d.comb += port.addr.eq(index)

        hit_ways = [(s.data != LineStatus.NOT_VALID) & (t.data == tag) for s, t in zip(status_rd, tag_rd)]
        hit = am.Signal(1)
        hit_way = am.Signal(1)
        m.d.comb += hit.eq(am.Cat(*hit_ways).any())
        if self.ways == 2:
            m.d.comb += hit_way.eq(hit_ways[1])

        hit_line = select(hit_way, [p.data for p in line_rd])
        hit_word = hit_line.word_select(word, 32)

        lru_way = self.lru.bit_select(index, 1)
        victim_next = am.Signal(1)
        if self.ways == 2:
            m.d.comb += victim_next.eq(am.Mux(
                status_rd[0].data == LineStatus.NOT_VALID,
                0,
                am.Mux(status_rd[1].data == LineStatus.NOT_VALID, 1, lru_way),
            ))
        victim_status = select(victim_next, [p.data for p in status_rd])

        complete = am.Signal(1)

        m.d.comb += [
            self.idle.eq(self.state == CacheState.READY),
            self.bus.resp.payload.eq(hit_word),
        ]

        with m.Switch(self.state):
            with m.Case(CacheState.READY):
                m.d.comb += self.bus.req.ready.eq(1)

            with m.Case(CacheState.LOOKUP):
                with m.If(hit):
                    m.d.comb += [
                        self.bus.resp.valid.eq(~req.write),
                        complete.eq(req.write | self.bus.resp.ready),
                    ]

                    with m.If(req.write):
                        for i in range(self.ways):
                            with m.If(hit_way == i):
                                m.d.comb += [
                                    line_wr[i].data.eq(am.Cat(*(req.data for _ in range(self.line_words)))),
                                    line_wr[i].en.eq(req.sel << (word << 2)),
                                    status_wr[i].data.eq(LineStatus.DIRTY),
                                    status_wr[i].en.eq(1),
                                ]

                    with m.If(complete):
                        m.d.comb += [
                            self.bus.req.ready.eq(1),
                            self.hit.eq(~self.refilled),
                        ]
                        m.d.sync += self.refilled.eq(0)
                        with m.If(~self.refilled):
                            m.d.sync += self.hits.eq(self.hits + 1)
                        if self.ways == 2:
                            m.d.sync += lru_way.eq(~hit_way)

                        # may be overridden below by a new request
                        m.d.sync += self.state.eq(CacheState.READY)

                with m.Else():
                    m.d.comb += self.miss.eq(1)
                    m.d.sync += [
                        self.misses.eq(self.misses + 1),
                        self.victim.eq(victim_next),
                        self.mem_sent.eq(0),
                    ]

                    with m.If(victim_status == LineStatus.DIRTY):
                        m.d.sync += self.state.eq(CacheState.WRITEBACK)
                    with m.Else():
                        m.d.sync += self.state.eq(CacheState.FILL)

            with m.Case(CacheState.WRITEBACK):
                victim_tag = select(self.victim, [p.data for p in tag_rd])
                m.d.comb += [
                    self.mem.req.valid.eq(~self.mem_sent),
                    self.mem.req.payload.addr.eq(self.line_address(index, victim_tag)),
                    self.mem.req.payload.write.eq(1),
                    self.mem.req.payload.data.eq(select(self.victim, [p.data for p in line_rd])),
                    self.mem.resp.ready.eq(self.mem_sent),
                ]

                with m.If(self.mem.req.valid & self.mem.req.ready):
                    m.d.sync += self.mem_sent.eq(1)

                with m.If(self.mem.resp.valid & self.mem.resp.ready):
                    m.d.sync += [
                        self.writebacks.eq(self.writebacks + 1),
                        self.mem_sent.eq(0),
                        self.state.eq(CacheState.FILL),
                    ]

            with m.Case(CacheState.FILL):
                m.d.comb += [
                    self.mem.req.valid.eq(~self.mem_sent),
                    self.mem.req.payload.addr.eq(self.line_address(index, tag)),
                    self.mem.req.payload.write.eq(0),
                    self.mem.resp.ready.eq(self.mem_sent),
                ]

                with m.If(self.mem.req.valid & self.mem.req.ready):
                    m.d.sync += self.mem_sent.eq(1)

                with m.If(self.mem.resp.valid & self.mem.resp.ready):
                    for i in range(self.ways):
                        with m.If(self.victim == i):
                            m.d.comb += [
                                line_wr[i].data.eq(self.mem.resp.payload),
                                line_wr[i].en.eq((1 << len(line_wr[i].en)) - 1),
                                tag_wr[i].data.eq(tag),
                                tag_wr[i].en.eq(1),
                                status_wr[i].data.eq(LineStatus.CLEAN),
                                status_wr[i].en.eq(1),
                            ]

                    if self.ways == 2:
                        m.d.sync += lru_way.eq(~self.victim)

                    m.d.sync += [
                        self.mem_sent.eq(0),
                        self.refilled.eq(1),
                        self.state.eq(CacheState.LOOKUP),
                    ]

        # READY, or LOOKUP finishing a hit
        with m.If(self.bus.req.valid & self.bus.req.ready):
            m.d.sync += [
                req.eq(self.bus.req.payload),
                self.state.eq(CacheState.LOOKUP),
            ]

        return m

class BypassState(am.lib.enum.Enum, shape=1):
    CACHED = 0
    DEVICE = 1

class DeviceBypass(am.lib.wiring.Component):
    """Sends device addresses around a cache, uncached.

    Anything at or above `mem_size` is a device access. Device requests
    wait for the cache to go idle, so they stay in program order with
    cached ones, and then travel to memory as a single word with the
    `uncached` flag set.
    """

    def __init__(self, cache, mem_size):
        super().__init__({
            'bus': In(cache_bus()),
            'mem': Out(memory_bus(cache.line_words)),
        })

        self.cache = cache
        self.mem_size = mem_size

        self.state = am.Signal(BypassState)
        self.pending = am.Signal(CacheRequest)
        self.sent = am.Signal(1)

    def elaborate(self, platform):
        m = am.Module()

        m.submodules.cache = cache = self.cache

        is_device = self.bus.req.payload.addr >= self.mem_size

        with m.Switch(self.state):
            with m.Case(BypassState.CACHED):
                m.d.comb += [
                    cache.bus.req.payload.eq(self.bus.req.payload),
                    cache.bus.req.valid.eq(self.bus.req.valid & ~is_device),
                    self.bus.req.ready.eq(am.Mux(is_device, cache.idle, cache.bus.req.ready)),

                    self.bus.resp.valid.eq(cache.bus.resp.valid),
                    self.bus.resp.payload.eq(cache.bus.resp.payload),
                    cache.bus.resp.ready.eq(self.bus.resp.ready),

                    self.mem.req.valid.eq(cache.mem.req.valid),
                    self.mem.req.payload.eq(cache.mem.req.payload),
                    cache.mem.req.ready.eq(self.mem.req.ready),

                    cache.mem.resp.valid.eq(self.mem.resp.valid),
                    cache.mem.resp.payload.eq(self.mem.resp.payload),
                    self.mem.resp.ready.eq(cache.mem.resp.ready),
                ]

                with m.If(self.bus.req.valid & self.bus.req.ready & is_device):
                    m.d.sync += [
                        self.pending.eq(self.bus.req.payload),
                        self.sent.eq(0),
                        self.state.eq(BypassState.DEVICE),
                    ]

            with m.Case(BypassState.DEVICE):
                m.d.comb += [
                    self.mem.req.valid.eq(~self.sent),
                    self.mem.req.payload.addr.eq(self.pending.addr),
                    self.mem.req.payload.write.eq(self.pending.write),
                    self.mem.req.payload.uncached.eq(1),
                    self.mem.req.payload.data.eq(self.pending.data),

                    self.bus.resp.valid.eq(self.sent & self.mem.resp.valid & ~self.pending.write),
                    self.bus.resp.payload.eq(self.mem.resp.payload[:32]),
                    self.mem.resp.ready.eq(self.sent & (self.pending.write | self.bus.resp.ready)),
                ]

                with m.If(self.mem.req.valid & self.mem.req.ready):
                    m.d.sync += self.sent.eq(1)

                with m.If(self.mem.resp.valid & self.mem.resp.ready):
                    m.d.sync += self.state.eq(BypassState.CACHED)

        return m
