"""``python -m release_spine migrate`` is the same as the ``release-spine`` script."""

from release_spine.cli.app import app

if __name__ == "__main__":
    app(prog_name="release-spine")
