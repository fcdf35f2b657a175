"""
apporchestra.remote - Scripted remote execution on machine handles.
"""

from .executor import RemoteExecutor, ShellExecutor, transport_command
from .script import Script, ScriptOptions, ScriptResult

__all__ = [
    "RemoteExecutor",
    "ShellExecutor",
    "transport_command",
    "Script",
    "ScriptOptions",
    "ScriptResult",
]
