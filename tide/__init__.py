from tide.tide_commands import __version__
