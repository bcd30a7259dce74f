import argparse
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()


def _load_config(path: Path | None):
    from vidframe import config as c
    cfg_path = path or c.default_path()
    try:
        return c.load(cfg_path)
    except c.ConfigError as exc:
        print(exc, file=sys.stderr)
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(prog="vidframe")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP service")
    p_serve.add_argument("--config", "-c", type=Path, default=None,
                         help="TOML config file (default: config-$CONTAINER_ENVIRONMENT.toml)")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=None, help="Overrides api.listen_port")

    p_frame = sub.add_parser("frame", help="Extract one frame without the server")
    p_frame.add_argument("path", type=Path)
    p_frame.add_argument("index", type=int)
    p_frame.add_argument("--width", type=int, default=0)
    p_frame.add_argument("--height", type=int, default=0)
    p_frame.add_argument("--thumbnail", action="store_true")
    p_frame.add_argument("--output", "-o", type=Path, default=None, help="Output JPEG (default: stdout)")

    p_check = sub.add_parser("check", help="Check external requirements")
    p_check.add_argument("--config", "-c", type=Path, default=None)

    args = parser.parse_args()

    from vidframe import runtime

    if args.command == "serve":
        cfg = _load_config(args.config)
        runtime.require(needs_ffmpeg=True, storage_dir=cfg.storage.local_directory)
        if args.port:
            cfg.api.listen_port = args.port

        from vidframe import log
        log.configure(cfg.api.is_prod)

        import uvicorn
        from vidframe import server
        app = server.create_app(cfg)
        uvicorn.run(app, host=args.host, port=cfg.api.listen_port, log_config=None)

    elif args.command == "frame":
        runtime.require(needs_ffmpeg=True)
        import asyncio
        from vidframe import frames, types as t
        if args.index < 0 or args.width < 0 or args.height < 0:
            print("index, width and height must be non-negative", file=sys.stderr)
            sys.exit(2)
        try:
            data = asyncio.run(frames.extract(args.path, args.index, args.width, args.height, args.thumbnail))
        except t.FrameError as exc:
            print(exc, file=sys.stderr)
            sys.exit(1)
        if not data:
            print(f"Frame {args.index} is past the end of {args.path}", file=sys.stderr)
            sys.exit(1)
        if args.output:
            args.output.write_bytes(data)
            print(f"Wrote {len(data)} bytes to {args.output}", file=sys.stderr)
        else:
            sys.stdout.buffer.write(data)

    elif args.command == "check":
        from vidframe import config as c
        storage_dir = None
        if args.config or c.default_path().exists():
            storage_dir = _load_config(args.config).storage.local_directory
        errors = runtime.check(needs_ffmpeg=True, storage_dir=storage_dir)
        if errors:
            for e in errors:
                print(f"  - {e}")
            sys.exit(1)
        print("OK")

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
