import signal

from django.core.management.base import BaseCommand

from apps.erp.providers import get_periodic_sync


class Command(BaseCommand):
    help = "Pull the Holoo catalog (categories, then products) once or on the configured interval."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="run one sync and exit")
        parser.add_argument(
            "--update-all",
            action="store_true",
            help="update every product, not only those whose stock or price changed",
        )

    def handle(self, *args, **options):
        periodic = get_periodic_sync()
        if options["once"]:
            result = periodic.run_once(update_all=options["update_all"])
            if result is None:
                self.stderr.write("erp sync failed, see logs")
                return
            self.stdout.write(f"categories={result['categories']} products={result['products']}")
            return

        if not periodic.start():
            self.stdout.write("erp integration disabled, nothing to do")
            return
        signal.signal(signal.SIGTERM, lambda *_: periodic.stop())
        self.stdout.write(f"erp periodic sync running every {periodic.interval}s")
        try:
            while not periodic.wait(1):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            periodic.stop()
