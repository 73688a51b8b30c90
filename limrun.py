import asyncio
import sys
from pathlib import Path

from lim import TemplateRunner, FileReader, Settings, load_settings, configure_logging


async def run_template_file(file_path: str, settings: Settings):
    """Render a document to stdout and exit with an appropriate status."""
    reader = FileReader(settings.root) if settings.root != "." else FileReader()
    runner = TemplateRunner(settings=settings, reader=reader)
    p = Path(file_path)
    if not p.is_file():
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    result = await runner.handle_template(p.read_bytes(), str(p.resolve()))
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    sys.stdout.buffer.write(result.output)
    sys.stdout.flush()
    for err in result.callback_errors:
        print(err.format(), file=sys.stderr)


async def render_stdin(settings: Settings):
    runner = TemplateRunner(settings=settings)
    result = await runner.handle_template(sys.stdin.buffer.read(), "<stdin>")
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    sys.stdout.buffer.write(result.output)
    sys.stdout.flush()


def main(argv=None):
    """limrun [--config site.yaml] [FILE]; reads stdin when FILE is omitted or '-'."""
    args = list(sys.argv[1:] if argv is None else argv)
    settings = Settings()
    if args and args[0] == "--config":
        if len(args) < 2:
            print("Error: --config needs a path", file=sys.stderr)
            raise SystemExit(2)
        try:
            settings = load_settings(args[1])
        except (OSError, ValueError) as e:
            print(f"Error: bad config {args[1]}: {e}", file=sys.stderr)
            raise SystemExit(2)
        args = args[2:]
    configure_logging(settings)

    if args and args[0] != "-":
        asyncio.run(run_template_file(args[0], settings))
    else:
        asyncio.run(render_stdin(settings))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nExiting.")
