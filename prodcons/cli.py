"""
Producer/consumer run over a bounded buffer.

    prodcons                      # 7 slots, 15 produce, 12 consume
    prodcons --capacity 1 --produce 3 --consume 3 --trace
    prodcons --dashboard          # Dash monitor on http://127.0.0.1:8050
"""
import argparse
import logging
import sys

from prodcons.config import RunConfig
from prodcons.core import trace
from prodcons.core.errors import LogCloseFailure, LogOpenFailure
from prodcons.core.kernel import ProducerConsumerRun

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s | %(threadName)-15s | %(message)s"


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="prodcons", description="Produtor/consumidor com buffer limitado")
    p.add_argument("--capacity", type=int, default=None, help="Capacidade do buffer (padrão=7)")
    p.add_argument("--produce", dest="produce_count", type=int, default=None,
                   help="Quantidade de itens produzidos (padrão=15)")
    p.add_argument("--consume", dest="consume_count", type=int, default=None,
                   help="Quantidade de itens consumidos (padrão=12)")
    p.add_argument("--producer-interval", type=float, default=None, help="Pausa do produtor em segundos (padrão=0.1)")
    p.add_argument("--consumer-interval", type=float, default=None, help="Pausa do consumidor em segundos (padrão=0.15)")
    p.add_argument("--log", dest="log_path", default=None, help="Arquivo de log (padrão=log_produtor_consumidor.txt)")
    p.add_argument("--durable-log", action=argparse.BooleanOptionalAction, default=None,
                   help="fsync a cada linha do log (padrão: ligado)")
    p.add_argument("--telemetry", dest="telemetry_path", default=None, help="Banco SQLite de telemetria (opcional)")
    p.add_argument("--watchdog-interval", type=float, default=None)
    p.add_argument("--stall-after", type=float, default=None)
    p.add_argument("--trace", action="store_true", help="Imprime eventos de sincronização [OS-TRACE]")
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("--dashboard", action="store_true", help="Abre o painel Dash em vez de rodar no terminal")
    return p.parse_args(argv)


def configure_logging(verbose: bool = False):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, force=True)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = RunConfig.from_args(args)
    except ValueError as e:
        print(f"Configuração inválida: {e}", file=sys.stderr)
        return 2

    if config.trace:
        trace.enable()

    if args.dashboard:
        # Heavy imports only when the dashboard is requested
        from prodcons.viz.server import run_server
        print("Dashboard will be available at http://127.0.0.1:8050")
        run_server(config)
        return 0

    telemetry = None
    if config.telemetry_path:
        from prodcons.data.database import SqlLogger
        telemetry = SqlLogger(config.telemetry_path)
        telemetry.start()

    try:
        report = ProducerConsumerRun(config, telemetry=telemetry).run()
    except LogOpenFailure as e:
        print(f"Erro ao criar o buffer/log: {e}")
        return 1
    except LogCloseFailure as e:
        print(f"Erro ao fechar o log: {e}")
        return 1
    finally:
        if telemetry is not None:
            telemetry.stop()

    if report.cancelled:
        print(f"Execução interrompida ({report.produced} produzidos, {report.consumed} consumidos). "
              f"Verifique o arquivo {report.log_path}.")
        return 130
    print(f"Execução finalizada. Verifique o arquivo {report.log_path}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
