import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from config import Config, ConfigurationError, load_config, resolve_executable
from extract import LaunchError, NavigationTimeout, RenderSession, fetch_page
from load import MemoryStateSink, SheetStateSink, StateSink, write_caption, write_dataset
from logger import setup_logger
from scheduler import PollScheduler
from transform import CHANNELS, ParseError, SeriesNotFound, build_dataset, clean_caption, parse_series


class RainService:
    """
    Owns the render session and the poll scheduler for one forecast location.

    start() -> scheduled run_cycle() calls -> stop().
    """

    def __init__(self, config: Config, sink: StateSink,
                 session: Optional[RenderSession] = None,
                 scheduler: Optional[PollScheduler] = None,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.sink = sink
        self.logger = logger or logging.getLogger("drops_weather")
        self.session = session
        self.scheduler = scheduler or PollScheduler(
            self.run_cycle, lambda: self.config.city_code, logger=self.logger
        )
        self.cycles = 0

    async def start(self):
        """Validate the browser mode, launch the browser, start polling.

        ConfigurationError and LaunchError are fatal and propagate.
        """
        self.logger.info(f"browserMode set to {self.config.browser_mode}")
        if self.session is None:
            executable = resolve_executable(self.config.browser_mode, self.config.browser_path)
            self.logger.info(f"browserPath set to {executable or 'playwright default'}")
            self.session = RenderSession(executable, logger=self.logger)
        await self.session.launch()
        self.scheduler.start()

    async def run_cycle(self):
        self.cycles += 1
        try:
            content = await fetch_page(self.session, self.config.city_url, logger=self.logger)
            await write_caption(self.sink, clean_caption(content.caption))

            series = parse_series(content.lines)
            for key, channel in CHANNELS.items():
                await self.write_channel(channel, series[key])
        except NavigationTimeout as e:
            self.logger.warning(f"{e} - cycle abandoned")
        except SeriesNotFound as e:
            self.logger.warning(f"no weatherData found in HTML: {e}")
        except ParseError as e:
            self.logger.error(f"weatherData could not be parsed: {e}")
        except Exception as e:
            self.logger.error(f"fetch cycle failed: {e}", exc_info=True)

    async def write_channel(self, channel, samples):
        """Build and write one channel; a failure here leaves the other channel alone."""
        self.logger.debug(f"creating {channel} states")
        try:
            dataset = build_dataset(samples, channel, self.config.timezone, self.config.language)
            await write_dataset(self.sink, channel, dataset)
        except SeriesNotFound as e:
            self.logger.warning(f"no weatherData found in HTML: {e}")
        except Exception as e:
            self.logger.error(f"{channel} states not written: {e}", exc_info=True)

    async def stop(self):
        """Cancel timers, then close the browser. Never raises."""
        try:
            await self.scheduler.stop()
        except Exception as e:
            self.logger.warning(f"error stopping scheduler: {e}")
        if self.session is not None:
            try:
                await self.session.teardown()
            except Exception as e:
                self.logger.warning(f"error closing browser: {e}")
        self.logger.info("shutdown complete")


async def open_sink(config: Config, logger: logging.Logger) -> StateSink:
    if "GCP_SERVICE_ACCOUNT" in os.environ:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, SheetStateSink.open, config.sheet_name, logger)
    logger.warning("GCP_SERVICE_ACCOUNT not set - states are kept in memory only")
    return MemoryStateSink()


async def run(config_file: Optional[str] = None) -> int:
    bootstrap = setup_logger()
    try:
        config = load_config(config_file)
    except ConfigurationError as e:
        bootstrap.error(str(e))
        return 1
    logger = setup_logger(log_file=config.log_file, log_level=config.log_level)

    try:
        sink = await open_sink(config, logger)
    except Exception as e:
        logger.error(f"cannot open state store: {e}")
        return 1

    service = RainService(config, sink, logger=logger)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        await service.start()
    except (ConfigurationError, LaunchError) as e:
        logger.error(str(e))
        await service.stop()
        return 1

    await stop_event.wait()
    await service.stop()
    return 0


def main():
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
