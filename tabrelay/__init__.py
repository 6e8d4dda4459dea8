# tabrelay
# Command relay between a controller and an already-logged-in browser tab

from .protocol import Command, Result, RefInfo, TraceEvent
from .relay import CommandRelay
from .executor import CommandExecutor

__all__ = ['Command', 'Result', 'RefInfo', 'TraceEvent', 'CommandRelay', 'CommandExecutor']
__version__ = '1.0.0'
