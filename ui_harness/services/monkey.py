from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ui_harness.schemas import MonkeyTestingOptions
from ui_harness.services.urls import clean_url, should_test_url

LOGGER = logging.getLogger("ui_harness.monkey")

GREMLINS_SCRIPT_URL = "https://unpkg.com/gremlins.js@2/dist/gremlins.min.js"

SET_IS_MONKEY_TEST_RUNNING_SCRIPT = "() => { window.isMonkeyTestRunning = true; }"
GET_IS_MONKEY_TEST_RUNNING_SCRIPT = "() => !!window.isMonkeyTestRunning"

# Receives GremlinsParameters.to_payload(); clears the running flag when the horde is done.
GREMLINS_BRIDGE_SCRIPT = """
(parameters) => {
  const unleash = () => {
    const horde = gremlins.createHorde({
      species: parameters.species.map((name) => gremlins.species[name]()),
      mogwais: parameters.mogwais.map((name) => gremlins.mogwais[name]()),
      strategies: [
        gremlins.strategies.distribution({ nb: parameters.numberOfAttacks, delay: parameters.attackDelay }),
      ],
      randomizer: new gremlins.Chance(parameters.randomSeed),
    });
    horde.unleash().then(() => { window.isMonkeyTestRunning = false; });
  };
  if (window.gremlins) {
    unleash();
    return;
  }
  const script = document.createElement("script");
  script.src = parameters.scriptUrl;
  script.onload = unleash;
  script.onerror = () => { window.isMonkeyTestRunning = false; };
  document.head.appendChild(script);
}
"""


@dataclass
class PageVisitRecord:
    url: str
    clean_url: str
    time_to_test: float

    @property
    def has_time_to_test(self) -> bool:
        return self.time_to_test > 0


@dataclass(frozen=True)
class GremlinsParameters:
    species: List[str]
    mogwais: List[str]
    number_of_attacks: int
    attack_delay_ms: int
    random_seed: int
    script_url: str = GREMLINS_SCRIPT_URL

    def to_payload(self) -> Dict[str, Any]:
        return {
            "species": list(self.species),
            "mogwais": list(self.mogwais),
            "numberOfAttacks": self.number_of_attacks,
            "attackDelay": self.attack_delay_ms,
            "randomSeed": self.random_seed,
            "scriptUrl": self.script_url,
        }


class MonkeyTester:
    """Randomly interacts with every reachable page until each one used up its time budget.

    Pages are tracked by their cleaned URL, so URLs that only differ in volatile parts share one
    budget. Every pass charges at least one polling interval, which guarantees termination.
    """

    def __init__(
        self,
        context: Any,
        options: Optional[MonkeyTestingOptions] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if context is None:
            raise ValueError("context is required")
        self._context = context
        self._options = options or MonkeyTestingOptions()
        self._random = random.Random(self._options.base_random_seed)
        self._records: List[PageVisitRecord] = []
        self._clock = clock
        self._sleep = sleep

    @property
    def records(self) -> List[PageVisitRecord]:
        return list(self._records)

    def _log(self, message: str, *args: object) -> None:
        output = getattr(self._context, "output", None)
        if output is not None:
            output.write_line(message, *args)
        else:
            LOGGER.info(message, *args)

    def test(self) -> None:
        self._log("Starting monkey testing.")
        while True:
            record = self._current_page_record()
            if self._can_test_page(record):
                self._test_page(record)
                continue

            left = self._left_page_to_test()
            if left is None:
                break
            self._context.driver.navigate(left.url)
            self._test_page(left)
        self._log("Finished monkey testing of %s page(s).", len(self._records))

    def _can_test_page(self, record: PageVisitRecord) -> bool:
        if not record.has_time_to_test:
            self._log('"%s" is tested completely.', record.clean_url)
            return False
        if not should_test_url(record.url, self._options.url_filters, self._context):
            self._log('Navigated to "%s" that should not be tested.', record.url)
            return False
        return True

    def _left_page_to_test(self) -> Optional[PageVisitRecord]:
        return next((record for record in self._records if record.has_time_to_test), None)

    def _current_page_record(self) -> PageVisitRecord:
        url = self._context.driver.url
        cleaned = clean_url(url, self._options.url_cleaners, self._context)
        record = next((item for item in self._records if item.clean_url == cleaned), None)
        if record is None:
            record = PageVisitRecord(url=url, clean_url=cleaned, time_to_test=self._options.page_test_time_seconds)
        self._log('Current page is "%s".', record.clean_url)
        return record

    def _next_random_seed(self) -> int:
        return self._random.randrange(2**31 - 1)

    def _test_page(self, record: PageVisitRecord) -> None:
        seed = self._next_random_seed()
        self._log(
            'Monkey testing "%s" within %.2fs with %s random seed.', record.clean_url, record.time_to_test, seed
        )
        record.time_to_test = self._test_current_page(record.time_to_test, seed)
        if record not in self._records:
            self._records.append(record)

    def build_parameters(self, time_to_test: float, random_seed: int) -> GremlinsParameters:
        delay_ms = self._options.gremlins_attack_delay_ms
        return GremlinsParameters(
            species=list(self._options.gremlins_species),
            mogwais=list(self._options.gremlins_mogwais),
            number_of_attacks=int(time_to_test * 1000 / delay_ms),
            attack_delay_ms=delay_ms,
            random_seed=random_seed,
        )

    def _test_current_page(self, time_to_test: float, random_seed: int) -> float:
        if self._options.run_accessibility_checking_assertion:
            self._context.assert_accessibility()
        if self._options.run_html_validation_assertion:
            self._context.assert_html_validity()

        driver = self._context.driver
        driver.evaluate(SET_IS_MONKEY_TEST_RUNNING_SCRIPT)
        driver.evaluate(GREMLINS_BRIDGE_SCRIPT, self.build_parameters(time_to_test, random_seed).to_payload())
        return self._measure_time_left(time_to_test)

    def _is_monkey_test_running(self) -> bool:
        try:
            return bool(self._context.driver.evaluate(GET_IS_MONKEY_TEST_RUNNING_SCRIPT))
        except Exception as exc:
            # The page may be navigating; check again on the next poll.
            LOGGER.debug("Polling the monkey test marker failed: %s", exc)
            return True

    def _measure_time_left(self, timeout: float) -> float:
        interval = self._options.page_marker_polling_interval_seconds
        started = self._clock()
        deadline = started + timeout
        interrupted = False
        while True:
            if not self._is_monkey_test_running():
                interrupted = True
                break
            now = self._clock()
            if now >= deadline:
                break
            self._sleep(min(interval, deadline - now))
        if not interrupted:
            return 0.0
        elapsed = max(self._clock() - started, interval)
        return max(0.0, timeout - elapsed)
