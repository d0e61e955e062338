#!/usr/bin/env python3
"""
rustpack — Build Rust functions into AWS Lambda "provided" runtime bundles.

Compiles each Rust function declared in a Serverless service file, either
with the local cargo toolchain or inside the lambda-rust docker image, and
packages the binary as target/lambda/{release|debug}/{binary}.zip with a
single executable entry named 'bootstrap'. Functions declared with
'runtime: rust' are then rewritten to the generic 'provided' runtime.

Prerequisites:
  - docker  (default, containerized builds)
  - cargo   (only for 'dockerless: true' builds)

Usage:
  python rustpack.py build -c serverless.yml
  python rustpack.py build -c serverless.yml -f hello --write
  python rustpack.py clean -c serverless.yml
"""

import argparse
import collections
import io
import os
import platform
import shutil
import subprocess
import sys
import zipfile

import yaml

DEFAULT_DOCKER_TAG = "0.2.7-rust-1.43.0"
DEFAULT_DOCKER_IMAGE = "softprops/lambda-rust"
RUST_RUNTIME = "rust"
BASE_RUNTIME = "provided"
SUPPORTED_PROVIDER = "aws"

BOOTSTRAP = "bootstrap"
MUSL_TARGET = "x86_64-unknown-linux-musl"
ARTIFACT_ROOT = os.path.join("target", "lambda")

RELEASE = "release"
DEBUG = "debug"
DEV_PROFILE = "dev"

LOCAL = "local"
CONTAINER = "container"

# Hosts that can't link Linux binaries natively build for the musl target
MUSL_PLATFORMS = ["darwin", "windows"]

# Linker used for the musl target, per host OS
PLATFORM_LINKERS = {
    "darwin": "x86_64-linux-musl-gcc",
    "windows": "rust-lld",
}

# Built-in defaults for the custom.rust / functions.<name>.rust keys
DEFAULTS = {
    "cargoFlags": "",
    "dockerTag": DEFAULT_DOCKER_TAG,
    "dockerImage": DEFAULT_DOCKER_IMAGE,
    "dockerless": False,
    "profile": None,
}


# ── Records ──────────────────────────────────────────────────────────

PluginConfig = collections.namedtuple(
    "PluginConfig",
    ["cargo_flags", "docker_tag", "docker_image", "dockerless", "profile",
     "docker_path"],
)

BuildSettings = collections.namedtuple(
    "BuildSettings",
    ["cargo_flags", "docker_tag", "docker_image", "dockerless", "profile"],
)

BuildUnit = collections.namedtuple("BuildUnit", ["package", "binary"])

# stage is "toolchain" or "packaging"; only meaningful on failure
BuildResult = collections.namedtuple(
    "BuildResult", ["succeeded", "status", "error", "stage"],
)

# runtime is None when the function inherits the provider runtime
FunctionResult = collections.namedtuple(
    "FunctionResult", ["name", "runtime", "artifact"],
)

PassResult = collections.namedtuple(
    "PassResult", ["functions", "provider_runtime"],
)


def _ok():
    return BuildResult(True, 0, None, None)


# ── Errors ───────────────────────────────────────────────────────────

class BuildError(Exception):
    """Base class for everything that aborts a build pass."""


class ConfigError(BuildError):
    pass


class MalformedHandler(BuildError):
    pass


class UnknownFunction(BuildError):
    pass


class NoMatchingFunctions(BuildError):
    pass


class ToolchainFailure(BuildError):
    def __init__(self, msg, result):
        super().__init__(msg)
        self.result = result


class PackagingFailure(BuildError):
    def __init__(self, msg, result):
        super().__init__(msg)
        self.result = result


# ── Utility ───────────────────────────────────────────────────────────

def die(msg):
    print(f"\n  ERROR: {msg}", file=sys.stderr)
    sys.exit(1)


def log(msg):
    print(f"  {msg}")


def host_platform():
    """Lower-cased host OS name: 'linux', 'darwin', 'windows', ..."""
    return platform.system().lower()


def profile_dir(profile):
    """Output directory segment for a build profile."""
    return DEBUG if profile == DEV_PROFILE else RELEASE


def _split_flags(flags):
    return [f for f in (flags or "").split() if f]


# ── Configuration ─────────────────────────────────────────────────────

def load_service(path):
    """Read a Serverless service file into a mapping."""
    try:
        with open(path) as f:
            service = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read service file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(service, dict):
        raise ConfigError(f"Service file {path} is not a mapping")
    return service


def load_plugin_config(service, service_path=""):
    """Build the global PluginConfig from the service's custom.rust block."""
    custom = service.get("custom") or {}
    if not isinstance(custom, dict):
        raise ConfigError("custom is not a mapping")
    custom = custom.get("rust") or {}
    if not isinstance(custom, dict):
        raise ConfigError("custom.rust is not a mapping")
    merged = dict(DEFAULTS)
    merged.update({k: v for k, v in custom.items() if k in DEFAULTS})

    docker_path = os.path.abspath(
        os.path.join(service_path or ".", custom.get("dockerPath") or "")
    )
    return PluginConfig(
        cargo_flags=merged["cargoFlags"],
        docker_tag=merged["dockerTag"],
        docker_image=merged["dockerImage"],
        dockerless=bool(merged["dockerless"]),
        profile=merged["profile"],
        docker_path=docker_path,
    )


def resolve_settings(config, overrides=None):
    """Effective per-function settings.

    Precedence is per-function override > global config > built-in default.
    A key present in the override block wins even when its value is falsy,
    so 'dockerless: false' on one function beats a global 'true'.
    """
    overrides = overrides or {}

    def pick(key, global_value):
        if key in overrides and overrides[key] is not None:
            return overrides[key]
        if global_value is not None:
            return global_value
        return DEFAULTS[key]

    return BuildSettings(
        cargo_flags=pick("cargoFlags", config.cargo_flags),
        docker_tag=pick("dockerTag", config.docker_tag),
        docker_image=pick("dockerImage", config.docker_image),
        dockerless=bool(pick("dockerless", config.dockerless)),
        profile=pick("profile", config.profile),
    )


# ── Handler parsing ───────────────────────────────────────────────────

def parse_handler(handler):
    """Split '<package>.<binary>' (or just '<package>') into a BuildUnit."""
    package, _, binary = (handler or "").partition(".")
    if not package:
        raise MalformedHandler(
            f"Handler '{handler}' does not name a cargo package"
        )
    return BuildUnit(package, binary or package)


def select_strategy(build_locally):
    return LOCAL if build_locally else CONTAINER


# ── Packaging ─────────────────────────────────────────────────────────

def artifact_path(root, profile, binary):
    """Deterministic location of a function's zip under the project root."""
    return os.path.join(
        root, ARTIFACT_ROOT, profile_dir(profile), f"{binary}.zip"
    )


def package_binary(binary_path, root, profile, binary):
    """Zip a compiled binary as an executable 'bootstrap' entry.

    Overwrites any previous archive for the same binary. I/O errors
    propagate to the caller.
    """
    with open(binary_path, "rb") as f:
        data = f.read()

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        info = zipfile.ZipInfo(BOOTSTRAP)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.create_system = 3  # unix, so the mode bits are honoured
        info.external_attr = 0o100755 << 16
        zf.writestr(info, data, compresslevel=9)

    output = artifact_path(root, profile, binary)
    os.makedirs(os.path.dirname(output), exist_ok=True)
    with open(output, "wb") as out:
        out.write(buf.getvalue())
    return output


# ── Local build ───────────────────────────────────────────────────────

def cargo_args(settings, host=None):
    """Command line for a local cargo build."""
    host = host or host_platform()
    # TODO: confirm with the plugin owners whether local builds should also
    # select the package with '-p <package>' like containerized builds do.
    args = ["cargo", "build"]
    if settings.profile != DEV_PROFILE:
        args.append("--release")
    if host in MUSL_PLATFORMS:
        args += ["--target", MUSL_TARGET]
    return args + _split_flags(settings.cargo_flags)


def cargo_env(host=None, base_env=None):
    """Process environment for cargo, with the musl linker wired in."""
    host = host or host_platform()
    env = dict(os.environ if base_env is None else base_env)
    linker = PLATFORM_LINKERS.get(host)
    if linker:
        env["RUSTFLAGS"] = f"{env.get('RUSTFLAGS', '')} -Clinker={linker}"
        env["TARGET_CC"] = linker
        env["CC_x86_64_unknown_linux_musl"] = linker
    return env


def _run(cmd, env=None, cwd=None, timeout=None):
    """Run a build process with inherited stdout/stderr."""
    try:
        r = subprocess.run(
            cmd, env=env, cwd=cwd, stdin=subprocess.DEVNULL, timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return BuildResult(False, None, e, "toolchain")
    if r.returncode != 0:
        return BuildResult(False, r.returncode, None, "toolchain")
    return _ok()


def local_build(unit, settings, root, log=log, timeout=None):
    """Build with the host's cargo and package the result."""
    host = host_platform()
    log("Running local cargo build")
    result = _run(
        cargo_args(settings, host), env=cargo_env(host), cwd=root,
        timeout=timeout,
    )
    if not result.succeeded:
        return result

    target_dir = os.path.join(root, "target")
    if host in MUSL_PLATFORMS:
        target_dir = os.path.join(target_dir, MUSL_TARGET)
    binary_path = os.path.join(
        target_dir, profile_dir(settings.profile), unit.binary
    )

    try:
        package_binary(binary_path, root, settings.profile, unit.binary)
    except OSError as e:
        log(f"Error zipping artifact {e}")
        return BuildResult(False, 1, e, "packaging")
    return _ok()


# ── Containerized build ───────────────────────────────────────────────

def cargo_cache_dirs():
    """(registry, git) cache directories shared with the build container."""
    cargo_home = os.environ.get("CARGO_HOME") or os.path.join(
        os.path.expanduser("~"), ".cargo"
    )
    return (
        os.path.join(cargo_home, "registry"),
        os.path.join(cargo_home, "git"),
    )


def docker_args(unit, settings, root):
    """Command line for a containerized build via lambda-rust."""
    docker_cli = os.environ.get("SLS_DOCKER_CLI") or "docker"
    registry, downloads = cargo_cache_dirs()

    args = [
        docker_cli, "run", "--rm", "-t",
        "-e", f"BIN={unit.binary}",
        "-v", f"{root}:/code",
        "-v", f"{registry}:/root/.cargo/registry",
        "-v", f"{downloads}:/root/.cargo/git",
    ]
    # The image's build script reads these from its environment
    if settings.profile:
        args += ["-e", f"PROFILE={settings.profile}"]
    cargo_flags = " ".join(_split_flags(settings.cargo_flags) + ["-p", unit.package])
    args += ["-e", f"CARGO_FLAGS={cargo_flags}"]

    args += _split_flags(os.environ.get("SLS_DOCKER_ARGS"))
    args.append(f"{settings.docker_image}:{settings.docker_tag}")
    return args


def docker_build(unit, settings, root, log=log, timeout=None):
    """Build inside the container; the image zips into the mounted target/."""
    log("Running containerized build")
    return _run(docker_args(unit, settings, root), timeout=timeout)


EXECUTORS = {
    LOCAL: local_build,
    CONTAINER: docker_build,
}


# ── Build pass ────────────────────────────────────────────────────────

def target_functions(service, function=None):
    """Names of the functions to consider, in declaration order."""
    functions = service.get("functions") or {}
    if function:
        if function not in functions:
            raise UnknownFunction(f"Function '{function}' is not defined")
        return [function]
    return list(functions)


def build_pass(service, config, function=None, log=log, timeout=None):
    """Build every Rust function of a service, one at a time.

    Returns a PassResult describing the runtime/artifact rewrites for the
    caller to apply. The first failing function aborts the pass.
    """
    provider = service.get("provider") or {}
    if provider.get("name") != SUPPORTED_PROVIDER:
        log(f"Skipping: provider '{provider.get('name')}' is not "
            f"'{SUPPORTED_PROVIDER}'")
        return PassResult([], None)

    functions = service.get("functions") or {}
    rust_functions = []
    for name in target_functions(service, function):
        func = functions[name] or {}
        if not isinstance(func, dict):
            raise ConfigError(f"Function '{name}' is not a mapping")
        overrides = func.get("rust")
        if overrides is not None and not isinstance(overrides, dict):
            raise ConfigError(f"functions.{name}.rust is not a mapping")
        if (func.get("runtime") or provider.get("runtime")) == RUST_RUNTIME:
            rust_functions.append((name, func))

    results = []
    for i, (name, func) in enumerate(rust_functions, 1):
        unit = parse_handler(func.get("handler"))
        settings = resolve_settings(config, func.get("rust"))
        strategy = select_strategy(settings.dockerless)

        log(f"[{i}/{len(rust_functions)}] Building Rust {func.get('handler')} func...")
        res = EXECUTORS[strategy](
            unit, settings, config.docker_path, log=log, timeout=timeout,
        )
        if not res.succeeded:
            log(f"Rust build encountered an error: {res.error} {res.status}.")
            msg = f"{name}: {res.error or f'exit status {res.status}'}"
            if res.stage == "packaging":
                raise PackagingFailure(msg, res)
            raise ToolchainFailure(msg, res)

        artifact = artifact_path(config.docker_path, settings.profile, unit.binary)
        log(f"       {artifact}")
        results.append(FunctionResult(
            name,
            BASE_RUNTIME if func.get("runtime") == RUST_RUNTIME else None,
            artifact,
        ))

    provider_runtime = None
    if provider.get("runtime") == RUST_RUNTIME:
        provider_runtime = BASE_RUNTIME

    if not results:
        raise NoMatchingFunctions(
            "no Rust functions found. "
            f"Use 'runtime: {RUST_RUNTIME}' in global or "
            "function configuration to use this plugin."
        )
    return PassResult(results, provider_runtime)


def apply_pass(service, result):
    """Write a PassResult's rewrites into the service mapping, in place."""
    functions = service.get("functions") or {}
    for fr in result.functions:
        func = functions[fr.name]
        func.setdefault("package", {})["artifact"] = fr.artifact
        if fr.runtime:
            func["runtime"] = fr.runtime
    if result.provider_runtime:
        service["provider"]["runtime"] = result.provider_runtime
    if result.functions:
        # Serverless would otherwise scan node_modules for dev dependencies
        service.setdefault("package", {})["excludeDevDependencies"] = False
    return service


# ── Build command ────────────────────────────────────────────────────

def cmd_build(args):
    """Run one build pass over the service file."""
    config_file = os.path.abspath(args.config)
    service_path = os.path.dirname(config_file)

    try:
        service = load_service(config_file)
        config = load_plugin_config(service, service_path)

        print(f"\n  rustpack build")
        print(f"  service:  {config_file}")
        print(f"  function: {args.function or 'all'}")
        print(f"  project:  {config.docker_path}")
        print()

        result = build_pass(
            service, config, function=args.function, timeout=args.timeout,
        )
    except BuildError as e:
        die(str(e))

    if not result.functions:
        return

    if args.write:
        apply_pass(service, result)
        try:
            with open(config_file, "w") as f:
                yaml.safe_dump(service, f, sort_keys=False)
        except OSError as e:
            die(f"Cannot write service file {config_file}: {e}")
        print(f"\n  Updated {config_file}")

    print(f"\n  [✓] Build complete!")
    for fr in result.functions:
        print(f"      {fr.name}: {fr.artifact}")
    print()


# ── Clean command ─────────────────────────────────────────────────────

def cmd_clean(args):
    """Remove packaged artifacts under the project root."""
    config_file = os.path.abspath(args.config)
    if os.path.isfile(config_file):
        try:
            service = load_service(config_file)
        except BuildError as e:
            die(str(e))
        root = load_plugin_config(service, os.path.dirname(config_file)).docker_path
    else:
        root = os.path.dirname(config_file)

    lambda_dir = os.path.join(root, ARTIFACT_ROOT)
    if os.path.isdir(lambda_dir):
        sz = sum(
            os.path.getsize(os.path.join(r, f))
            for r, _, files in os.walk(lambda_dir)
            for f in files
        )
        shutil.rmtree(lambda_dir)
        print(f"  Cleaned artifacts ({sz / 1024 / 1024:.1f} MB): {lambda_dir}")
    else:
        print(f"  No artifacts found at {lambda_dir}")


# ── CLI ──────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="rustpack",
        description="Build Rust functions for the AWS Lambda provided runtime.",
    )
    subparsers = parser.add_subparsers(dest="command")

    # build subcommand
    build_parser = subparsers.add_parser(
        "build",
        help="Compile and package Rust functions",
    )
    build_parser.add_argument(
        "-c", "--config", default="serverless.yml",
        help="Path to the Serverless service file (default: serverless.yml)",
    )
    build_parser.add_argument(
        "-f", "--function",
        help="Build only this function (default: all functions)",
    )
    build_parser.add_argument(
        "--write", action="store_true", default=False,
        help="Save the rewritten runtimes and artifact paths back "
             "to the service file",
    )
    build_parser.add_argument(
        "--timeout", type=float, default=None,
        help="Abort a cargo/docker run after this many seconds "
             "(default: wait forever)",
    )

    # clean subcommand
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove packaged artifacts under target/lambda",
    )
    clean_parser.add_argument(
        "-c", "--config", default="serverless.yml",
        help="Path to the Serverless service file (default: serverless.yml)",
    )

    args = parser.parse_args(argv)

    if args.command == "build":
        cmd_build(args)
    elif args.command == "clean":
        cmd_clean(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
