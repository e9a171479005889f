"""HTTP health probe for freshly started jails."""

import time

from jailship.errors import HealthCheckError, JailshipError
from jailship.errors_catalog import actionable_error
from jailship.shell import quote


class HealthProbe:
    """Probes a jail's private address from the host until it answers.

    The jail network is only reachable from the host, so every attempt is a
    `fetch` run over SSH. A failed request and a failed SSH round trip both
    simply consume one attempt.
    """

    REQUEST_TIMEOUT_SECONDS = 5

    def __init__(self, transport, logger, console, sleep=time.sleep):
        self.transport = transport
        self.logger = logger
        self.console = console
        self.sleep = sleep

    @staticmethod
    def build_url(address: str, port: int, path: str = "/") -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"http://{address}:{port}{path}"

    def check(
        self,
        address: str,
        port: int,
        path: str = "/",
        attempts: int = 10,
        interval: float = 2.0,
    ) -> int:
        url = self.build_url(address, port, path)
        attempts = max(1, attempts)
        command = f"fetch -q -T {self.REQUEST_TIMEOUT_SECONDS} -o /dev/null {quote(url)}"
        self.console.print(f"[blue]Health check: {url} (up to {attempts} attempts)[/blue]")

        for attempt in range(1, attempts + 1):
            try:
                result = self.transport.run(command, timeout=self.REQUEST_TIMEOUT_SECONDS + 10)
                passed = result.ok
            except JailshipError as exc:
                self.logger.debug("Health check attempt %s could not run: %s", attempt, exc)
                passed = False

            if passed:
                self.console.print(f"[green]Health check passed (attempt {attempt}).[/green]")
                return attempt

            if attempt < attempts:
                self.logger.info(
                    "Health check attempt %s/%s failed, retrying in %.1fs...",
                    attempt,
                    attempts,
                    interval,
                )
                self.sleep(interval)

        raise HealthCheckError(actionable_error("health_check_failed", attempts=str(attempts), url=url))
