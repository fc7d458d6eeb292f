#!/usr/bin/env python3
"""
Service Mesh Cluster Audit Tool
Counts workload and mesh configuration resources per namespace, tallies
multicluster service entries and captures a metrics snapshot from the
control-plane edge pod through a port-forward tunnel

Output: flat text report written to <cluster>.txt, or to stdout when no
cluster name is given
"""

import argparse
import asyncio
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from mesh_audit_clients import ClusterConnection, build_cluster_connection
from mesh_audit_enumerator import HOSTNAME_COUNT_MODES, meshResourceEnumerator
from mesh_audit_report import format_multicluster_line, meshAuditReport
from mesh_audit_tunnel import fetch_edge_metrics, find_edge_pod

PHASE_CONFIG = "error loading the configuration"
PHASE_CLIENTS = "error creating the k8s clients"
PHASE_NAMESPACES = "error getting the list of namespaces"
PHASE_REPORT = "error creating the report"
PHASE_RESOURCES = "error getting resources per namespace"
PHASE_MULTICLUSTER = "error getting multicluster SE"
PHASE_EDGE_POD = "error getting edge pod"
PHASE_PORT_FORWARD = "error doing port-forwarding"
PHASE_WRITE_METRICS = "error writing the metrics"


class Colors:
    """ANSI color codes for terminal output"""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    NC = '\033[0m'


def _split_csv(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or '').split(',') if item.strip()]


class Config:
    """Configuration class with environment defaults"""
    def __init__(self):
        self.cluster_name: Optional[str] = None

        # Cluster access
        self.kubeconfig_path: Optional[str] = os.getenv('KUBECONFIG')
        self.kube_context: Optional[str] = os.getenv('KUBE_CONTEXT')
        self.k8s_verify_ssl: Optional[bool] = self._get_verify_ssl_setting()
        self.k8s_ca_cert_path: Optional[str] = os.getenv('K8S_CA_CERT')

        # What to audit
        self.extra_excluded_namespaces = _split_csv(os.getenv('EXCLUDE_NAMESPACES'))
        self.multicluster_namespace = os.getenv('MULTICLUSTER_NAMESPACE', 'xcp-multicluster')
        self.hostname_count_mode = os.getenv('HOSTNAME_COUNT_MODE', 'last').lower()

        # Edge metrics
        self.fetch_metrics = os.getenv('FETCH_METRICS', 'true').lower() == 'true'
        self.edge_namespace = os.getenv('EDGE_NAMESPACE', 'istio-system')
        self.edge_label_selector = os.getenv('EDGE_LABEL_SELECTOR', 'app=edge')
        self.tunnel_local_port = int(os.getenv('TUNNEL_LOCAL_PORT', '8080'))
        self.tunnel_remote_port = int(os.getenv('TUNNEL_REMOTE_PORT', '8080'))
        self.metrics_path = os.getenv('METRICS_PATH', '/metrics')

        # Timeouts (seconds)
        self.api_timeout = float(os.getenv('K8S_API_TIMEOUT', '30'))
        self.tunnel_ready_timeout = float(os.getenv('TUNNEL_READY_TIMEOUT', '30'))
        self.metrics_timeout = float(os.getenv('METRICS_TIMEOUT', '30'))
        self.tunnel_close_timeout = float(os.getenv('TUNNEL_CLOSE_TIMEOUT', '10'))
        self.tunnel_poll_interval = float(os.getenv('TUNNEL_POLL_INTERVAL', '0.2'))

        # Logging
        self.log_file = os.getenv('LOG_FILE', 'mesh_audit.log')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO')

    def _get_verify_ssl_setting(self) -> Optional[bool]:
        """Get SSL verification setting from environment"""
        for env_var in ['K8S_VERIFY', 'OCP_API_VERIFY', 'VERIFY_SSL']:
            val = os.getenv(env_var)
            if val is not None:
                val_lower = val.strip().lower()
                if val_lower in ('true', '1', 'yes'):
                    return True
                if val_lower in ('false', '0', 'no'):
                    return False
        return None  # Not set, keep kubeconfig behaviour

    def tunnel_options(self) -> Dict[str, Any]:
        return {
            'local_port': self.tunnel_local_port,
            'remote_port': self.tunnel_remote_port,
            'metrics_path': self.metrics_path,
            'api_timeout': self.api_timeout,
            'ready_timeout': self.tunnel_ready_timeout,
            'fetch_timeout': self.metrics_timeout,
            'close_timeout': self.tunnel_close_timeout,
            'poll_interval': self.tunnel_poll_interval,
        }


class meshAuditTool:
    """Sequential mesh audit: namespaces, multicluster entries, edge metrics"""

    def __init__(self, config: Config, connection: Optional[ClusterConnection] = None):
        self.config = config
        self.connection = connection
        self.phase = PHASE_CLIENTS
        self.setup_logging()

    def setup_logging(self):
        """Setup logging configuration"""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        handlers = [logging.FileHandler(self.config.log_file)] if self.config.log_file else []
        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(levelname)s - [%(funcName)s] - %(message)s',
            handlers=handlers
        )
        self.logger = logging.getLogger(__name__)

    def log_info(self, message: str, component: str = "MAIN"):
        """Enhanced logging"""
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{Colors.GREEN}[{component}]{Colors.NC} {timestamp} - {message}", file=sys.stderr)
        self.logger.info(f"[{component}] {message}")

    def log_warn(self, message: str, component: str = "MAIN"):
        """Warning logging"""
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{Colors.YELLOW}[{component}]{Colors.NC} {timestamp} - {message}", file=sys.stderr)
        self.logger.warning(f"[{component}] {message}")

    def log_error(self, message: str, component: str = "MAIN"):
        """Error logging"""
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{Colors.RED}[{component}]{Colors.NC} {timestamp} - {message}", file=sys.stderr)
        self.logger.error(f"[{component}] {message}")

    def setup_kubernetes_clients(self) -> ClusterConnection:
        self.log_info("Loading Kubernetes credentials", "CONFIG")
        connection = build_cluster_connection(self.config)
        self.log_info("Kubernetes API connectivity verified successfully", "CONFIG")
        return connection

    def build_enumerator(self) -> meshResourceEnumerator:
        return meshResourceEnumerator(
            self.connection.core_v1,
            self.connection.custom_objects,
            api_timeout=self.config.api_timeout,
            hostname_mode=self.config.hostname_count_mode,
            extra_excluded=self.config.extra_excluded_namespaces,
            multicluster_namespace=self.config.multicluster_namespace,
        )

    async def run_audit(self, report: Optional[meshAuditReport] = None) -> Dict[str, Any]:
        """Run the audit; any failure propagates with self.phase naming the step"""
        start_time = time.time()

        self.phase = PHASE_CLIENTS
        if self.connection is None:
            self.connection = await asyncio.to_thread(self.setup_kubernetes_clients)
        enumerator = self.build_enumerator()

        self.phase = PHASE_NAMESPACES
        namespaces = await asyncio.to_thread(enumerator.list_namespaces)
        self.log_info(f"Auditing {len(namespaces)} namespaces", "ENUM")

        self.phase = PHASE_REPORT
        report = report or meshAuditReport(self.config.cluster_name)
        summary: Dict[str, Any] = {'namespaces': len(namespaces), 'metrics_bytes': None}

        with report:
            self.phase = PHASE_RESOURCES
            for ns in namespaces:
                tally = await asyncio.to_thread(enumerator.count_resources, ns)
                report.write_tally(tally)

            self.phase = PHASE_MULTICLUSTER
            mc_count = await asyncio.to_thread(enumerator.count_multicluster_service_entries)
            report.write_line(format_multicluster_line(mc_count))
            summary['multicluster_service_entries'] = mc_count
            self.log_info(f"{mc_count} multicluster service entries in {self.config.multicluster_namespace}", "ENUM")

            if self.config.fetch_metrics:
                self.phase = PHASE_EDGE_POD
                pod = await asyncio.to_thread(
                    find_edge_pod,
                    self.connection.core_v1,
                    self.config.edge_namespace,
                    self.config.edge_label_selector,
                    self.config.api_timeout,
                )
                self.log_info(f"Using edge pod {pod}", "EDGE")

                self.phase = PHASE_PORT_FORWARD
                snapshot = await asyncio.to_thread(
                    fetch_edge_metrics,
                    self.connection.core_v1,
                    pod,
                    **self.config.tunnel_options()
                )

                self.phase = PHASE_WRITE_METRICS
                report.write_bytes(snapshot.body)
                summary['metrics_bytes'] = len(snapshot.body)
                self.log_info(f"Captured {len(snapshot.body)} bytes of edge metrics", "TUNNEL")
            else:
                self.log_warn("Edge metrics fetch disabled", "TUNNEL")

        summary['elapsed_time'] = time.time() - start_time
        self.log_info(f"Report written to {report.destination} in {summary['elapsed_time']:.2f} seconds", "REPORT")
        return summary


def create_argument_parser():
    """Create and configure argument parser"""
    parser = argparse.ArgumentParser(
        description='Service Mesh Cluster Audit Tool',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Report contents:
  - One line per namespace with service, pod, gateway (and hostname),
    virtual service, destination rule, service entry, tier1 gateway and
    ingressgateway counts
  - The number of service entries in the multicluster namespace
  - The raw metrics body of the edge pod, fetched through a port-forward

Namespaces kube-system, istio-system, istio-gateway, tsb and cert-manager
are never audited.

Environment Variables:
  KUBECONFIG, KUBE_CONTEXT
  K8S_VERIFY, OCP_API_VERIFY, VERIFY_SSL (default: kubeconfig setting)
  K8S_CA_CERT - Path to CA certificate file
  EXCLUDE_NAMESPACES - Extra comma-separated namespaces to skip
  MULTICLUSTER_NAMESPACE (default: xcp-multicluster)
  HOSTNAME_COUNT_MODE (default: last) - last or sum
  FETCH_METRICS (default: true)
  EDGE_NAMESPACE (default: istio-system)
  EDGE_LABEL_SELECTOR (default: app=edge)
  TUNNEL_LOCAL_PORT, TUNNEL_REMOTE_PORT (default: 8080)
  METRICS_PATH (default: /metrics)
  K8S_API_TIMEOUT, TUNNEL_READY_TIMEOUT, METRICS_TIMEOUT (default: 30)
  TUNNEL_CLOSE_TIMEOUT (default: 10)
  LOG_FILE (default: mesh_audit.log), LOG_LEVEL (default: INFO)

  Variables can also be placed in a .env file in the working directory.

Examples:
  %(prog)s prod-east              # writes prod-east.txt
  %(prog)s                        # report on stdout
  %(prog)s prod-east --exclude default,monitoring --hostname-count sum
  %(prog)s prod-east --no-metrics
        """
    )

    parser.add_argument('cluster', nargs='?',
                       help='Cluster name; the report is written to <cluster>.txt (stdout if omitted)')

    # Cluster access
    parser.add_argument('--kubeconfig',
                       help='Path to kubeconfig file')
    parser.add_argument('--context',
                       help='Kubeconfig context to use')
    parser.add_argument('--verify-ssl', action='store_true',
                       help='Force SSL certificate verification')

    # Audit scope
    parser.add_argument('--exclude',
                       help='Extra comma-separated namespaces to skip')
    parser.add_argument('--multicluster-namespace',
                       help='Namespace holding multicluster service entries')
    parser.add_argument('--hostname-count', choices=HOSTNAME_COUNT_MODES,
                       help='Gateway hostname counting: last qualifying server or sum of all')

    # Edge metrics
    parser.add_argument('--no-metrics', action='store_true',
                       help='Skip the edge pod metrics snapshot')
    parser.add_argument('--edge-namespace',
                       help='Namespace of the edge pod')
    parser.add_argument('--edge-selector',
                       help='Label selector of the edge pod')
    parser.add_argument('--local-port', type=int,
                       help='Local port of the tunnel (0 picks a free port)')
    parser.add_argument('--remote-port', type=int,
                       help='Edge pod port serving metrics')
    parser.add_argument('--metrics-path',
                       help='HTTP path of the metrics endpoint')

    # Timeouts
    parser.add_argument('--api-timeout', type=float,
                       help='Kubernetes API request timeout in seconds')
    parser.add_argument('--ready-timeout', type=float,
                       help='Seconds to wait for the tunnel to become ready')
    parser.add_argument('--metrics-timeout', type=float,
                       help='Metrics HTTP request timeout in seconds')

    # Control options
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                       help='Set logging level')
    parser.add_argument('--log-file',
                       help='Log file path')
    return parser


def apply_arguments(config: Config, args) -> Config:
    """Override config with command line arguments"""
    config.cluster_name = args.cluster
    if args.kubeconfig is not None:
        config.kubeconfig_path = args.kubeconfig
    if args.context is not None:
        config.kube_context = args.context
    if args.verify_ssl:
        config.k8s_verify_ssl = True
    if args.exclude is not None:
        config.extra_excluded_namespaces = _split_csv(args.exclude)
    if args.multicluster_namespace is not None:
        config.multicluster_namespace = args.multicluster_namespace
    if args.hostname_count is not None:
        config.hostname_count_mode = args.hostname_count
    if args.no_metrics:
        config.fetch_metrics = False
    if args.edge_namespace is not None:
        config.edge_namespace = args.edge_namespace
    if args.edge_selector is not None:
        config.edge_label_selector = args.edge_selector
    if args.local_port is not None:
        config.tunnel_local_port = args.local_port
    if args.remote_port is not None:
        config.tunnel_remote_port = args.remote_port
    if args.metrics_path is not None:
        config.metrics_path = args.metrics_path
    if args.api_timeout is not None:
        config.api_timeout = args.api_timeout
    if args.ready_timeout is not None:
        config.tunnel_ready_timeout = args.ready_timeout
    if args.metrics_timeout is not None:
        config.metrics_timeout = args.metrics_timeout
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    return config


async def main(argv: Optional[List[str]] = None, connection: Optional[ClusterConnection] = None) -> int:
    """Main execution function"""
    load_dotenv()
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    tool = None
    try:
        config = apply_arguments(Config(), args)
        tool = meshAuditTool(config, connection=connection)
        await tool.run_audit()
    except Exception as e:
        if tool is None:
            print(f"{Colors.RED}[MAIN]{Colors.NC} {PHASE_CONFIG}: {e}", file=sys.stderr)
        else:
            tool.log_error(f"{tool.phase}: {e}", "MAIN")
        return 1
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print(f"{Colors.YELLOW}[MAIN]{Colors.NC} Audit interrupted by user", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    run()
