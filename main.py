import argparse, asyncio, json, os, sys
from src.pvefailover.config import ConnectionConfig, Credentials, parse_host_list
from src.pvefailover.connection import ClusterConnection
from src.pvefailover.errors import ProxmoxError
from src.pvefailover.executor import StatusListener
from src.pvefailover.logging_config import get_logger, setup_logging

logger = get_logger("pvefailover.cli")


class ConsoleListener(StatusListener):
    """Prints connection changes for --watch mode."""

    def connected(self, active_host, is_fallback):
        suffix = " (fallback)" if is_fallback else ""
        logger.info("Connected via %s%s", active_host, suffix)

    def unavailable(self, reason):
        logger.error("Cluster unavailable: %s", reason)

    def degraded(self, reason):
        logger.warning("Fallback connection lost, keeping last state: %s", reason)

    def backup_hosts_changed(self, hosts):
        print(f"Backup hosts: {','.join(sorted(hosts))}")

    def summary_updated(self, summary):
        print(f"Nodes online: {summary.node_count}  VMs running: {summary.vm_count}  Containers running: {summary.lxc_count}")


async def run(args, credentials: Credentials, cfg: ConnectionConfig) -> int:
    async with ClusterConnection(credentials, cfg, listener=ConsoleListener()) as conn:
        conn.initialize(credentials.hostname, parse_host_list(args.backup_hosts, exclude=credentials.hostname))

        if args.path:
            result = await conn.execute(args.path, skip_cache=True)
            print(json.dumps(result, indent=2) if not isinstance(result, str) else result)

        if args.summary:
            summary = await conn.cluster.fetch_summary()
            print(f"Nodes online: {summary.node_count} ({', '.join(summary.online_node_ips)})")
            print(f"VMs running: {summary.vm_count}")
            print(f"Containers running: {summary.lxc_count}")

        if args.watch:
            conn.start_health_monitoring()
            conn.start_polling()
            try:
                while True:
                    await asyncio.sleep(cfg.health_check_interval)
                    conn.cleanup()
                    if args.verbose:
                        print(json.dumps(conn.get_debug_status(), indent=2, default=str))
            except asyncio.CancelledError:
                pass

        if args.verbose and not args.watch:
            print(json.dumps(conn.get_debug_status(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    p = argparse.ArgumentParser(
        description="Multi-host Proxmox VE API access with health scoring and automatic fallback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s pve1.lan --summary
  %(prog)s pve1.lan --backup-hosts 10.0.0.2,10.0.0.3 --path /api2/json/nodes
  %(prog)s pve1.lan --insecure --watch --verbose
        """
    )

    # Connection
    p.add_argument("host", nargs='?', default=None,
                   help="Primary Proxmox host (default: $PVEFAILOVER_HOST)")
    p.add_argument("--backup-hosts", type=str, default=os.getenv("PVEFAILOVER_BACKUP_HOSTS", ""),
                   help="Comma-separated backup host addresses")
    p.add_argument("--port", type=int, default=None,
                   help="API port (default: 8006)")

    # Credentials
    p.add_argument("--username", type=str, default=None,
                   help="API user, e.g. root@pam (default: $PVEFAILOVER_USERNAME)")
    p.add_argument("--token-id", type=str, default=None,
                   help="API token id (default: $PVEFAILOVER_TOKEN_ID)")
    p.add_argument("--token-secret", type=str, default=None,
                   help="API token secret (default: $PVEFAILOVER_TOKEN_SECRET)")
    p.add_argument("--insecure", action="store_true",
                   help="Accept self-signed TLS certificates")

    # Tuning
    p.add_argument("--timeout", type=float, default=None,
                   help="Per-host request timeout in seconds (default: 15)")
    p.add_argument("--health-interval", type=float, default=None,
                   help="Health check interval in seconds (default: 60)")
    p.add_argument("--poll-interval", type=float, default=None,
                   help="Cluster status polling interval in seconds, 0 disables (default: 300)")

    # Actions
    p.add_argument("--path", type=str, default="",
                   help="Execute one GET request against this API path and print the result")
    p.add_argument("--summary", action="store_true",
                   help="Print node, VM and container counts")
    p.add_argument("--watch", action="store_true",
                   help="Keep running with health monitoring and polling until interrupted")

    # Output and logging
    p.add_argument("--verbose", "-v", action="store_true",
                   help="Enable debug logging and print connection state")
    p.add_argument("--log-file", type=str, default=None,
                   help="Also write logs to this file")

    args = p.parse_args()

    setup_logging("DEBUG" if args.verbose else None, args.log_file)

    default_credentials = Credentials()
    credentials = Credentials(
        hostname=args.host or default_credentials.hostname,
        username=args.username or default_credentials.username,
        token_id=args.token_id or default_credentials.token_id,
        token_secret=args.token_secret or default_credentials.token_secret,
        allow_self_signed_certs=args.insecure or default_credentials.allow_self_signed_certs,
    )
    try:
        credentials.validate()
    except ProxmoxError as e:
        print(f"Error: {e}")
        sys.exit(1)

    default_cfg = ConnectionConfig()
    cfg = ConnectionConfig(
        port=args.port if args.port is not None else default_cfg.port,
        timeout=args.timeout if args.timeout is not None else default_cfg.timeout,
        health_check_interval=args.health_interval if args.health_interval is not None else default_cfg.health_check_interval,
        poll_interval=args.poll_interval if args.poll_interval is not None else default_cfg.poll_interval,
    )

    if not (args.path or args.summary or args.watch):
        args.summary = True

    try:
        sys.exit(asyncio.run(run(args, credentials, cfg)))
    except KeyboardInterrupt:
        print("\nStopped.")
    except ProxmoxError as e:
        print(f"Error: {e}")
        sys.exit(1)
