"""Entry point for `python -m ipunblock`."""

from ipunblock.cli import cli


def main() -> None:
    cli(prog_name="ipunblock")


if __name__ == "__main__":
    main()
