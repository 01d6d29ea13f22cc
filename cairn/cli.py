from __future__ import annotations

import os
import sys
import argparse
import logging
import json as _json
import getpass as _getpass

from typing import Callable, List, Optional

from cairn.backend import open_backend
from cairn.bootstrap import CancelToken, SecondarySource, initialize, validate_copy_options
from cairn.constants import BLOB_KIND_NAMES, COMPRESSION_MODES, DEFAULT_COMPRESSION, KIND_DATA, KIND_TREE
from cairn.crypto import DEFAULT_KDF_PROFILE, KDF_PROFILES
from cairn.errors import CairnError, Cancelled, InvalidRequest, PasswordMismatch
from cairn.polynomial import format_polynomial
from cairn.repository import Repository
from cairn.status import Status, Success, display_location, exit_code, failure_from, render


Prompt = Callable[[str], str]


def _ask(prompt: Prompt, text: str) -> str:
    try:
        return prompt(text)
    except EOFError as exc:
        raise InvalidRequest("no password could be read from the terminal") from exc
    except KeyboardInterrupt as exc:
        raise Cancelled("password entry interrupted") from exc


def read_password_twice(first: str, again: str, *, prompt: Prompt = _getpass.getpass) -> str:
    """Ask for a password twice; raises PasswordMismatch if the entries differ."""
    pw1 = _ask(prompt, first)
    pw2 = _ask(prompt, again)
    if pw1 != pw2:
        raise PasswordMismatch("passwords do not match")
    return pw1


def _resolve_password(
    password: Optional[str], env_var: str, prompt_text: str, prompt: Prompt
) -> str:
    if password is not None:
        return password
    env_pw = os.environ.get(env_var)
    if env_pw is not None:
        return env_pw
    return _ask(prompt, prompt_text)


def _open_repository(repo: str, password: Optional[str], prompt: Prompt = _getpass.getpass) -> Repository:
    if not repo:
        raise InvalidRequest("please specify a repository location (--repo or CAIRN_REPOSITORY)")
    backend = open_backend(repo)
    pw = _resolve_password(password, "CAIRN_PASSWORD", "enter password for repository: ", prompt)
    return Repository.open(backend, pw)


def cmd_init(
    repo: str,
    *,
    password: Optional[str] = None,
    from_repo: Optional[str] = None,
    from_password: Optional[str] = None,
    copy_chunker_params: bool = False,
    compression: str = DEFAULT_COMPRESSION,
    kdf_profile: str = DEFAULT_KDF_PROFILE,
    as_json: bool = False,
    prompt: Prompt = _getpass.getpass,
    cancel: Optional[CancelToken] = None,
) -> Status:
    """Initialize a repository at ``repo`` and print exactly one status.

    Passwords are collected (twice for the new repository) before anything
    is written. All failures are reported through the returned status.
    """
    try:
        if not repo:
            raise InvalidRequest("please specify a repository location (--repo or CAIRN_REPOSITORY)")
        validate_copy_options(bool(from_repo), copy_chunker_params)
        if kdf_profile not in KDF_PROFILES:
            raise InvalidRequest(f"unknown KDF profile: {kdf_profile}")
        backend = open_backend(repo)
        secondary = None
        if from_repo:
            from_pw = _resolve_password(
                from_password, "CAIRN_FROM_PASSWORD", "enter password for secondary repository: ", prompt
            )
            secondary = SecondarySource(open_backend(from_repo), from_pw)
        if password is None:
            password = os.environ.get("CAIRN_PASSWORD")
        if password is None:
            password = read_password_twice(
                "enter password for new repository: ", "enter password again: ", prompt=prompt
            )
        r = initialize(
            backend,
            password,
            secondary=secondary,
            copy_chunker_params=copy_chunker_params,
            compression=compression,
            kdf_params=KDF_PROFILES[kdf_profile],
            cancel=cancel,
        )
        status: Status = Success(id=r.config.id, repository=repo)
    except (CairnError, OSError) as exc:
        status = failure_from(exc, repo or "")
    # failures go to stderr in both formats
    out = sys.stdout if isinstance(status, Success) else sys.stderr
    print(render(status, as_json=as_json), file=out)
    return status


def cmd_key_list(repo: str, *, password: Optional[str] = None, as_json: bool = False) -> bool:
    r = _open_repository(repo, password)
    keys = r.list_keys()
    if as_json:
        print(_json.dumps([{"id": name, "current": name == r.key_name, **hint} for name, hint in keys]))
        return True
    print(" ID          User        Host                  Created")
    for name, hint in keys:
        marker = "*" if name == r.key_name else " "
        print(
            f"{marker}{name[:10]:<11} {hint.get('username', ''):<11} "
            f"{hint.get('hostname', ''):<21} {hint.get('created', '')}"
        )
    return True


def cmd_key_add(
    repo: str,
    *,
    password: Optional[str] = None,
    new_password: Optional[str] = None,
    kdf_profile: str = DEFAULT_KDF_PROFILE,
    prompt: Prompt = _getpass.getpass,
) -> bool:
    r = _open_repository(repo, password, prompt)
    if new_password is None:
        new_password = read_password_twice(
            "enter new password: ", "enter password again: ", prompt=prompt
        )
    name = r.add_key(new_password, kdf_params=KDF_PROFILES[kdf_profile])
    print(f"saved new key as {name[:10]}")
    return True


def cmd_key_remove(repo: str, key_id: str, *, password: Optional[str] = None) -> bool:
    r = _open_repository(repo, password)
    matches = [name for name, _ in r.list_keys() if name.startswith(key_id)]
    if len(matches) != 1:
        raise InvalidRequest(f"key id {key_id!r} matches {len(matches)} keys")
    r.remove_key(matches[0])
    print(f"removed key {matches[0][:10]}")
    return True


def cmd_info(repo: str, *, password: Optional[str] = None, as_json: bool = False) -> bool:
    r = _open_repository(repo, password)
    info = {
        "repository": display_location(repo),
        "id": r.config.id,
        "version": r.config.version,
        "chunker_polynomial": format_polynomial(r.config.chunker_polynomial),
        "compression": r.config.compression,
        "packs": len(r.index.packs()),
        "blobs": len(r.index),
    }
    if as_json:
        print(_json.dumps(info))
        return True
    print(f"Repository: {info['repository']}")
    print(f"  ID: {info['id']}")
    print(f"  Version: {info['version']}")
    print(f"  Chunker polynomial: 0x{info['chunker_polynomial']}")
    print(f"  Compression: {info['compression']}")
    print(f"  Packs: {info['packs']}")
    print(f"  Blobs: {info['blobs']}")
    return True


def cmd_store(
    repo: str, inputs: List[str], *, password: Optional[str] = None, jobs: int = 4, quiet: bool = False
) -> bool:
    r = _open_repository(repo, password)
    handles = [open(p, "rb") for p in inputs]
    try:
        with r:
            results = r.save_streams(handles, jobs=jobs)
    finally:
        for fh in handles:
            fh.close()
    for path, ids in zip(inputs, results):
        print(f"{path}: {len(ids)} chunk(s)")
        if not quiet:
            for blob_id in ids:
                print(f"  {blob_id.hex()}")
    return True


def cmd_cat(repo: str, blob_id: str, *, password: Optional[str] = None, kind: int = KIND_DATA) -> bool:
    r = _open_repository(repo, password)
    try:
        raw_id = bytes.fromhex(blob_id)
    except ValueError as exc:
        raise InvalidRequest(f"invalid blob id {blob_id!r}") from exc
    data = r.load_blob(kind, raw_id)
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
    return True


def cmd_check(repo: str, *, password: Optional[str] = None, read_data: bool = True) -> bool:
    r = _open_repository(repo, password)
    problems = r.check(read_data=read_data)
    for p in problems:
        print(p)
    if problems:
        print(f"Fatal: repository contains errors ({len(problems)})")
        return False
    print("no errors were found")
    return True


def cmd_rebuild_index(repo: str, *, password: Optional[str] = None) -> bool:
    r = _open_repository(repo, password)
    idx = r.rebuild_index()
    print(f"rebuilt index: {len(idx.packs())} pack(s), {len(idx)} blob(s)")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="cairn",
        description="cairn deduplicating encrypted repository tool",
        epilog="Chunk contents, pack headers and the repository config are AEAD-protected.",
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr")
    sub = ap.add_subparsers(dest="cmd", required=True)

    def _repo_args(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--repo", "-r",
            default=os.environ.get("CAIRN_REPOSITORY", ""),
            help="Repository location (default: $CAIRN_REPOSITORY)",
        )
        p.add_argument("--password", help="Repository password (default: $CAIRN_PASSWORD or prompt)")

    # init
    ap_init = sub.add_parser("init", help="Initialize a new repository")
    _repo_args(ap_init)
    ap_init.add_argument(
        "--from-repo",
        default=os.environ.get("CAIRN_FROM_REPOSITORY"),
        help="Secondary repository to copy chunker parameters from (default: $CAIRN_FROM_REPOSITORY)",
    )
    ap_init.add_argument("--from-password", help="Secondary repository password (default: $CAIRN_FROM_PASSWORD or prompt)")
    ap_init.add_argument(
        "--copy-chunker-params",
        action="store_true",
        help="Copy the chunker polynomial from the secondary repository",
    )
    ap_init.add_argument("--compression", choices=list(COMPRESSION_MODES), default=DEFAULT_COMPRESSION)
    ap_init.add_argument(
        "--kdf-profile",
        choices=sorted(KDF_PROFILES),
        default=DEFAULT_KDF_PROFILE,
        help="Argon2id cost profile for the first key (default: balanced)",
    )
    ap_init.add_argument("--json", action="store_true", help="Emit one JSON status record")

    # key
    ap_key = sub.add_parser("key", help="Manage repository keys")
    key_sub = ap_key.add_subparsers(dest="key_cmd", required=True)
    ap_key_list = key_sub.add_parser("list", help="List keys")
    _repo_args(ap_key_list)
    ap_key_list.add_argument("--json", action="store_true")
    ap_key_add = key_sub.add_parser("add", help="Add a key for another password")
    _repo_args(ap_key_add)
    ap_key_add.add_argument("--new-password", help="Password for the new key (default: prompt twice)")
    ap_key_add.add_argument("--kdf-profile", choices=sorted(KDF_PROFILES), default=DEFAULT_KDF_PROFILE)
    ap_key_remove = key_sub.add_parser("remove", help="Remove a key")
    _repo_args(ap_key_remove)
    ap_key_remove.add_argument("key_id", help="Key id (unique prefix)")

    ap_info = sub.add_parser("info", help="Show repository configuration")
    _repo_args(ap_info)
    ap_info.add_argument("--json", action="store_true")

    ap_store = sub.add_parser("store", help="Chunk files and store their contents")
    _repo_args(ap_store)
    ap_store.add_argument("inputs", nargs="+", help="Input files")
    ap_store.add_argument("--jobs", "-j", type=int, default=4, help="Parallel streams (default 4)")
    ap_store.add_argument("--quiet", action="store_true", help="Only print per-file summaries")

    ap_cat = sub.add_parser("cat", help="Write a blob to stdout")
    _repo_args(ap_cat)
    ap_cat.add_argument("blob_id", help="Blob id (hex)")
    ap_cat.add_argument("--kind", choices=sorted(BLOB_KIND_NAMES.values()), default="data")

    ap_check = sub.add_parser("check", help="Verify every pack in the repository")
    _repo_args(ap_check)
    ap_check.add_argument("--headers-only", action="store_true", help="Skip decrypting blob contents")

    ap_rebuild = sub.add_parser("rebuild-index", help="Rebuild the index from pack headers")
    _repo_args(ap_rebuild)

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "init":
            status = cmd_init(
                args.repo,
                password=args.password,
                from_repo=args.from_repo,
                from_password=args.from_password,
                copy_chunker_params=args.copy_chunker_params,
                compression=args.compression,
                kdf_profile=args.kdf_profile,
                as_json=args.json,
            )
            sys.exit(exit_code(status))
        elif args.cmd == "key":
            if args.key_cmd == "list":
                cmd_key_list(args.repo, password=args.password, as_json=args.json)
            elif args.key_cmd == "add":
                cmd_key_add(
                    args.repo, password=args.password, new_password=args.new_password, kdf_profile=args.kdf_profile
                )
            else:
                cmd_key_remove(args.repo, args.key_id, password=args.password)
        elif args.cmd == "info":
            cmd_info(args.repo, password=args.password, as_json=args.json)
        elif args.cmd == "store":
            cmd_store(args.repo, args.inputs, password=args.password, jobs=args.jobs, quiet=args.quiet)
        elif args.cmd == "cat":
            kind = KIND_TREE if args.kind == "tree" else KIND_DATA
            cmd_cat(args.repo, args.blob_id, password=args.password, kind=kind)
        elif args.cmd == "check":
            ok = cmd_check(args.repo, password=args.password, read_data=not args.headers_only)
            sys.exit(0 if ok else 1)
        elif args.cmd == "rebuild-index":
            cmd_rebuild_index(args.repo, password=args.password)
        else:
            raise RuntimeError("Unknown command")
    except CairnError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
