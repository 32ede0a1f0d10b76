import asyncio

from tide.tide_runtime import create_engine_state, eval_source
from tide.tide_stack import create_stack
from tide.tide_stream import create_stdin_input

SOURCE = b"ls | length"


async def main() -> bool:
    """Evaluate the built-in source once, with stdin as pipeline input."""
    engine_state = create_engine_state()
    stack = create_stack()
    input = create_stdin_input()
    return await eval_source(engine_state, stack, SOURCE, "application", input, True)


if __name__ == "__main__":
    asyncio.run(main())
