"""
Message Sinks
=============
Receivers for the human readable status text produced while flashing. A sink
is any object with a report(text) method.
"""

import sys
from typing import Callable, Optional, TextIO


# Color codes for terminal output
class Colors:
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


class ConsoleSink:
    """
    Writes messages to a terminal stream as they arrive. Messages carry their
    own line breaks, so partial lines ("Erase sectors... ") stay on one line
    with the result that follows.
    """

    def __init__(self, stream: Optional[TextIO] = None, use_color: Optional[bool] = None):
        self.stream = stream if stream is not None else sys.stdout
        if use_color is None:
            use_color = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.use_color = use_color

    def report(self, text: str):
        if text.startswith('ERROR'):
            if not text.endswith('\n'):
                text += '\n'
            if self.use_color:
                text = f"{Colors.FAIL}{Colors.BOLD}{text[:-1]}{Colors.ENDC}\n"
        elif text.startswith('Finished') and self.use_color:
            text = f"{Colors.OKGREEN}{text}{Colors.ENDC}"
        self.stream.write(text)
        self.stream.flush()


class CallbackSink:
    """Forwards every message to a callable (GUI log widget, test list, ...)"""

    def __init__(self, callback: Callable[[str], None]):
        self.callback = callback

    def report(self, text: str):
        self.callback(text)
