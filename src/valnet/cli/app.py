# src/valnet/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from valnet.cli.helper import build_bus, deploy_bootstrap, deploy_joining, raw_node_args
from valnet.config.loader import load_node_config
from valnet.config.models import NodePaths
from valnet.config.resolver import load_deploy_record, write_deploy_record
from valnet.errors import ValnetError, SanityFailure
from valnet.keys.keypair import read_pubkey
from valnet.launch.supervisor import Supervisor
from valnet.logging.log import init_logging
from valnet.observers.events import new_ctx
from valnet.sanity.checker import SanityChecker
from valnet.sanity.models import SanityOptions


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Validator cluster bootstrap and join CLI")


def _paths(work_dir: Optional[Path]) -> NodePaths:
    return NodePaths(work_dir=work_dir) if work_dir else NodePaths()


def _fail(e: ValnetError) -> NoReturn:
    typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=e.exit_code)


# ------------------------------------------------------------------------------
# node
# ------------------------------------------------------------------------------

@app.command()
def node(
    config: Optional[Path] = typer.Option(None, "--config", help="YAML file with node arguments"),
    deploy_method: Optional[str] = typer.Option(None, "--deploy-method", help="local, tar or skip"),
    role: Optional[str] = typer.Option(
        None, "--node-type", help="bootstrap-validator, validator or blockstreamer"
    ),
    entrypoint_ip: Optional[str] = typer.Option(None, "--entrypoint-ip"),
    num_nodes: Optional[int] = typer.Option(None, "--num-nodes"),
    skip_setup: Optional[bool] = typer.Option(None, "--skip-setup/--no-skip-setup"),
    fail_on_validator_bootup_failure: Optional[bool] = typer.Option(
        None, "--fail-on-validator-bootup-failure/--no-fail-on-validator-bootup-failure"
    ),
    node_index: Optional[int] = typer.Option(None, "--node-index"),
    rust_log: Optional[str] = typer.Option(None, "--rust-log"),
    external_primordial_accounts_file: Optional[Path] = typer.Option(
        None, "--external-primordial-accounts-file"
    ),
    disable_airdrops: Optional[bool] = typer.Option(None, "--disable-airdrops/--enable-airdrops"),
    internal_nodes_stake_lamports: Optional[int] = typer.Option(None, "--internal-nodes-stake-lamports"),
    internal_nodes_lamports: Optional[int] = typer.Option(None, "--internal-nodes-lamports"),
    num_bench_tps_clients: Optional[int] = typer.Option(None, "--num-bench-tps-clients"),
    bench_tps_extra_args: Optional[str] = typer.Option(None, "--bench-tps-extra-args"),
    num_bench_exchange_clients: Optional[int] = typer.Option(None, "--num-bench-exchange-clients"),
    bench_exchange_extra_args: Optional[str] = typer.Option(None, "--bench-exchange-extra-args"),
    genesis_options: Optional[str] = typer.Option(None, "--genesis-options"),
    extra_args: Optional[str] = typer.Option(None, "--extra-node-args"),
    gpu_mode: Optional[str] = typer.Option(None, "--gpu-mode", help="on, off, auto or cuda"),
    warp_slot: Optional[int] = typer.Option(None, "--warp-slot"),
    wait_for_node_init: Optional[bool] = typer.Option(None, "--wait-for-node-init/--no-wait-for-node-init"),
    extra_primordial_stakes: Optional[int] = typer.Option(None, "--extra-primordial-stakes"),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", help="Defaults to $VALNET_WORKDIR or ~/solana"),
    ssh_username: Optional[str] = typer.Option(None, "--ssh-username"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    catchup_timeout: Optional[float] = typer.Option(None, "--catchup-timeout", help="Seconds; waits forever if unset"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Set up and start this machine's node."""
    logger, run_id, log_path = init_logging(verbose=debug)

    typer.echo("")
    typer.secho("valnet node", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    try:
        cfg = load_node_config(
            config,
            raw_node_args(
                deploy_method=deploy_method,
                role=role,
                entrypoint_ip=entrypoint_ip,
                num_nodes=num_nodes,
                skip_setup=skip_setup,
                fail_on_validator_bootup_failure=fail_on_validator_bootup_failure,
                node_index=node_index,
                rust_log=rust_log,
                external_primordial_accounts_file=external_primordial_accounts_file,
                disable_airdrops=disable_airdrops,
                internal_nodes_stake_lamports=internal_nodes_stake_lamports,
                internal_nodes_lamports=internal_nodes_lamports,
                num_bench_tps_clients=num_bench_tps_clients,
                bench_tps_extra_args=bench_tps_extra_args,
                num_bench_exchange_clients=num_bench_exchange_clients,
                bench_exchange_extra_args=bench_exchange_extra_args,
                genesis_options=genesis_options,
                extra_args=extra_args,
                gpu_mode=gpu_mode,
                warp_slot=warp_slot,
                wait_for_node_init=wait_for_node_init,
                extra_primordial_stakes=extra_primordial_stakes,
            ),
        )
        paths = _paths(work_dir)
        write_deploy_record(cfg, paths.deploy_record)

        bus = build_bus(logger, run_id)
        run_ctx = new_ctx(role=cfg.role.value, host=cfg.entrypoint_ip, run_id=run_id)

        if cfg.is_bootstrap:
            handle = deploy_bootstrap(cfg, paths, bus=bus, run_ctx=run_ctx)
        else:
            handle = deploy_joining(
                cfg,
                paths,
                bus=bus,
                run_ctx=run_ctx,
                ssh_username=ssh_username,
                ssh_key=ssh_key,
                catchup_timeout=catchup_timeout,
            )
    except ValnetError as e:
        logger.error("node setup failed: %s", e)
        _fail(e)

    typer.secho(f"\n{cfg.role.value} running (pid {handle.pid}), log {handle.log_path}", fg=typer.colors.GREEN)


# ------------------------------------------------------------------------------
# sanity
# ------------------------------------------------------------------------------

@app.command()
def sanity(
    rust_log: Optional[str] = typer.Argument(None, help="RUST_LOG for the throwaway validator"),
    option: List[str] = typer.Option(
        [], "-o", help="noLedgerVerify, noValidatorSanity or rejectExtraNodes (repeatable)"
    ),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Verify the running cluster from the bootstrap host."""
    logger, run_id, _ = init_logging(verbose=debug)
    paths = _paths(work_dir)

    try:
        record = load_deploy_record(paths.deploy_record)
        options = SanityOptions.from_flags(option)
        checker = SanityChecker(
            record,
            options,
            paths=paths,
            rust_log=rust_log,
            bus=build_bus(logger, run_id),
            run_ctx=new_ctx(role="sanity", host=record.entrypoint_ip, run_id=run_id),
        )
        report = checker.run()
        if not report.ok:
            raise SanityFailure(
                f"{len(report.failures)} sanity check(s) failed: " + "; ".join(report.failures),
                report,
                timed_out=report.timed_out,
            )
    except ValnetError as e:
        logger.error("sanity failed: %s", e)
        _fail(e)

    typer.secho(
        f"\nPass: {report.peer_count_observed} nodes, rpc ok, "
        f"ledger {'verified' if report.ledger_verified else 'not verified'}",
        fg=typer.colors.GREEN,
    )


# ------------------------------------------------------------------------------
# relaunch (reboot hook)
# ------------------------------------------------------------------------------

@app.command()
def relaunch(
    name: Optional[str] = typer.Argument(None, help="Process to restart; all registered ones if omitted"),
    spec_dir: Optional[Path] = typer.Option(None, "--spec-dir"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Restart supervised processes after a host restart."""
    logger, _, _ = init_logging(verbose=debug)
    supervisor = Supervisor(spec_dir or NodePaths().supervisor_dir)
    try:
        if name:
            spawned = [(name, supervisor.relaunch(name))]
        else:
            spawned = supervisor.relaunch_all()
    except ValnetError as e:
        logger.error("relaunch failed: %s", e)
        _fail(e)

    for proc_name, result in spawned:
        typer.echo(f"{proc_name}: pid {result.pid}, log {result.log_path}")


# ------------------------------------------------------------------------------
# pubkey
# ------------------------------------------------------------------------------

@app.command()
def pubkey(keypair: Path = typer.Argument(..., help="Keypair file (64-byte JSON array)")):
    """Print the base58 public key of a keypair file."""
    try:
        typer.echo(read_pubkey(keypair))
    except ValnetError as e:
        _fail(e)


if __name__ == "__main__":
    app()
