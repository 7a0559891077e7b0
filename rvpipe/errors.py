class SimulationError(RuntimeError):
    """Base class for anything that stops a run early.

    `addr`, `pc` and `cycle` are filled in when they are known, and
    are None otherwise.
    """

    def __init__(self, message, addr=None, pc=None, cycle=None):
        super().__init__(message)
        self.message = message
        self.addr = addr
        self.pc = pc
        self.cycle = cycle

    def __str__(self):
        parts = [self.message]
        if self.addr is not None:
            parts.append('addr = 0x{:08x}'.format(self.addr))
        if self.pc is not None:
            parts.append('pc = 0x{:08x}'.format(self.pc))
        if self.cycle is not None:
            parts.append('cycle = {}'.format(self.cycle))
        return ', '.join(parts)

class MisalignedAccess(SimulationError):
    pass

class MemoryOutOfRange(SimulationError):
    pass

class CacheProtocolViolation(SimulationError):
    pass

class SimulationTimeout(SimulationError):
    pass
