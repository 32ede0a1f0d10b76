"""
Execution scopes: variable values and environment variables for a run.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

LAST_EXIT_CODE = "LAST_EXIT_CODE"


class Stack:
    """Variable bindings (by var id) and an environment map, with an optional parent.

    Reads walk the parent chain; writes land on this frame. Child stacks are
    used for custom command calls and closures.
    """
    def __init__(self, parent: Optional['Stack'] = None):
        self.parent = parent
        self.vars: Dict[int, Any] = {}
        self.env_vars: Dict[str, Any] = {}
        self.hidden_env: set = set()

    def child(self) -> 'Stack':
        return Stack(parent=self)

    # --- variables ---------------------------------------------------

    def add_var(self, var_id: int, value: Any) -> None:
        self.vars[var_id] = value

    def has_var(self, var_id: int) -> bool:
        cur = self
        while cur is not None:
            if var_id in cur.vars:
                return True
            cur = cur.parent
        return False

    def get_var(self, var_id: int) -> Any:
        cur = self
        while cur is not None:
            if var_id in cur.vars:
                return cur.vars[var_id]
            cur = cur.parent
        raise KeyError(var_id)

    def set_var(self, var_id: int, value: Any) -> None:
        """Rebind an existing variable in the frame that owns it."""
        cur = self
        while cur is not None:
            if var_id in cur.vars:
                cur.vars[var_id] = value
                return
            cur = cur.parent
        self.vars[var_id] = value

    # --- environment -------------------------------------------------

    def add_env_var(self, name: str, value: Any) -> None:
        self.hidden_env.discard(name)
        self.env_vars[name] = value

    def get_env_var(self, name: str, default: Any = None) -> Any:
        cur = self
        while cur is not None:
            if name in cur.hidden_env:
                return default
            if name in cur.env_vars:
                return cur.env_vars[name]
            cur = cur.parent
        return default

    def remove_env_var(self, name: str) -> bool:
        present = self.get_env_var(name) is not None
        self.env_vars.pop(name, None)
        if self.parent is not None:
            self.hidden_env.add(name)
        return present

    def get_env_vars(self) -> Dict[str, Any]:
        """Flatten the environment, nearest frame wins."""
        chain = []
        cur = self
        while cur is not None:
            chain.append(cur)
            cur = cur.parent
        out: Dict[str, Any] = {}
        for frame in reversed(chain):
            for name in frame.hidden_env:
                out.pop(name, None)
            out.update(frame.env_vars)
        return out

    def __repr__(self) -> str:
        return f"<Stack vars={len(self.vars)} env=[{', '.join(self.env_vars)}]>"


def set_last_exit_code(stack: Stack, exit_code: int) -> None:
    stack.add_env_var(LAST_EXIT_CODE, int(exit_code))


def _home_dir() -> Optional[str]:
    try:
        return str(Path.home())
    except (RuntimeError, KeyError, OSError):
        return None


def get_init_cwd() -> str:
    """Current directory, else $PWD, else the home directory, else an empty path."""
    try:
        return os.getcwd()
    except OSError:
        pass
    pwd = os.environ.get("PWD")
    if pwd is not None:
        return pwd
    return _home_dir() or ""


def create_stack() -> Stack:
    stack = Stack()
    stack.add_env_var("PWD", get_init_cwd())
    return stack
