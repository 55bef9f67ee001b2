#!/usr/bin/env python3
"""Load the Truth document (plus optional secrets overlay) into Redis."""
import os, sys, json, time, argparse, redis

def read_json_file(path: str) -> dict:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        sys.exit(f"ERROR: file not found: {path}")
    except json.JSONDecodeError as e:
        sys.exit(f"ERROR: invalid JSON in {path}: {e}")

def merge(base: dict, overlay: dict) -> dict:
    """Recursive merge; overlay wins. Secrets only need to name the keys they set."""
    out = dict(base or {})
    for k, v in (overlay or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = merge(out[k], v)
        else:
            out[k] = v
    return out

def check_components(doc: dict) -> None:
    comps = doc.get("components")
    if not isinstance(comps, dict) or not comps:
        sys.exit("ERROR: truth has no 'components' block.")
    for name, comp in comps.items():
        env = comp.get("env", {})
        if not isinstance(env, dict):
            sys.exit(f"ERROR: components.{name}.env must be an object.")

def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Load merged truth into Redis (single key).")
    p.add_argument("--redis-url",
                   default=os.getenv("TRUTH_REDIS_URL", "redis://127.0.0.1:6379"))
    p.add_argument("--truth",   default=os.getenv("TRUTH_FILE", "truth/trademind.json"))
    p.add_argument("--secrets", default=os.getenv("TRUTH_SECRETS_FILE"))
    p.add_argument("--key",     default=os.getenv("TRUTH_REDIS_KEY", "truth"))
    args = p.parse_args(argv)

    base = read_json_file(args.truth)
    if args.secrets:
        if os.path.exists(args.secrets):
            base = merge(base, read_json_file(args.secrets))
        else:
            sys.exit(f"ERROR: secrets file not found: {args.secrets}")
    check_components(base)

    r = redis.Redis.from_url(args.redis_url, decode_responses=True)
    pipe = r.pipeline()
    pipe.set(args.key, json.dumps(base, separators=(",", ":")))
    pipe.set(f"{args.key}:version", str(base.get("version", "")))
    pipe.set(f"{args.key}:ts", str(int(time.time())))
    pipe.execute()

    # Secrets (anon key) are never echoed
    print(f"Loaded truth into {args.key} at {args.redis_url}")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
