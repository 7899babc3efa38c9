import asyncio
import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from site_scraper import (
    CrawlScheduler,
    CrawlState,
    FatalScrapeError,
    FetchError,
    FetchedPage,
    PageFetcher,
    Settings,
    parse_progress_line,
)

SEED = "https://example.com"


def page(title, *links, extra=""):
    anchors = "".join(f'<a href="{href}">{href}</a> ' for href in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><h1>{title}</h1><p>{anchors}</p>{extra}</body></html>"
    )


SITE = {
    "https://example.com/": page("Home", "/about", "/contact", "https://other.com/"),
    "https://example.com/about": page("About", "/", "/contact"),
    "https://example.com/contact": page("Contact", "/about#team"),
}


class FakeFetcher(PageFetcher):
    def __init__(self, pages, errors=None):
        self.pages = pages
        self.errors = errors or {}
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        pending = self.errors.get(url)
        if pending:
            raise pending.pop(0)
        if url not in self.pages:
            raise FetchError(FetchError.HTTP, "HTTP 404", 404)
        return FetchedPage(url=url, final_url=url, status=200, html=self.pages[url])


def rate_limited():
    return FetchError(FetchError.RATE_LIMITED, "HTTP 429", 429)


class SchedulerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.out = Path(self._tmp.name) / "run"
        self.stream = io.StringIO()

    def tearDown(self):
        self._tmp.cleanup()

    def settings(self, **kwargs):
        defaults = dict(
            url=SEED,
            output_dir=self.out,
            concurrency=2,
            max_pages=10,
            initial_delay=0.0,
        )
        defaults.update(kwargs)
        return Settings(**defaults)

    def scheduler(self, fetcher, **kwargs):
        return CrawlScheduler(
            self.settings(**kwargs),
            fetcher=fetcher,
            session=MagicMock(),
            progress_stream=self.stream,
        )

    def progress_events(self):
        return [parse_progress_line(line) for line in self.stream.getvalue().splitlines()]

    def assert_invariants(self, scheduler):
        frontier = scheduler.frontier
        self.assertEqual(
            scheduler.successful_pages + scheduler.failed_pages, len(frontier.visited)
        )
        self.assertLessEqual(len(frontier.visited), len(frontier.discovered))
        self.assertLessEqual(len(frontier.discovered), scheduler.settings.max_pages)
        urls = [r.url for r in scheduler.sitemap]
        self.assertEqual(len(urls), len(set(urls)))


class TestCrawl(SchedulerTestCase):
    async def test_end_to_end(self):
        fetcher = FakeFetcher(SITE)
        scheduler = self.scheduler(fetcher)
        summary = await scheduler.run()

        self.assertEqual(scheduler.state, CrawlState.TERMINATED)
        self.assertIsNone(scheduler.error)
        self.assertEqual(sorted(p.name for p in (self.out / "pages").iterdir()),
                         ["about.md", "contact.md", "index.md"])
        self.assertEqual(sorted(fetcher.calls), sorted(SITE))

        sitemap = (self.out / "sitemap.md").read_text()
        self.assertIn("## Pages (3)", sitemap)
        self.assertEqual(sitemap.count("- ["), 3)

        state = json.loads((self.out / "state.json").read_text())
        self.assertEqual(state["successfulPages"], 3)
        self.assertEqual(state["failedPages"], 0)
        self.assertEqual(state["totalPages"], 3)
        self.assertEqual(state["toVisit"], [])

        events = self.progress_events()
        self.assertEqual(events[-1]["progress"], 100)
        progress = [e["progress"] for e in events]
        self.assertEqual(progress, sorted(progress))
        for e in events:
            if e["queueLength"] > 0:
                self.assertLessEqual(e["progress"], 95)

        self.assertEqual(summary.successful_pages, 3)
        self.assertEqual(summary.total_pages, 3)
        self.assert_invariants(scheduler)

        index = (self.out / "pages" / "index.md").read_text()
        self.assertTrue(index.startswith("# Home\n"))
        self.assertIn("**URL:** https://example.com/", index)

    async def test_json_output(self):
        await self.scheduler(FakeFetcher(SITE), output_format="json").run()
        data = json.loads((self.out / "pages" / "about.json").read_text())
        self.assertEqual(data["metadata"]["title"], "About")

    async def test_max_pages(self):
        scheduler = self.scheduler(FakeFetcher(SITE), max_pages=2)
        await scheduler.run()
        self.assertEqual(scheduler.successful_pages, 2)
        self.assertEqual(len(list((self.out / "pages").iterdir())), 2)
        self.assert_invariants(scheduler)


class RedirectingFetcher(FakeFetcher):
    """Serves every page as if the server redirected to www."""

    async def fetch(self, url):
        fetched = await super().fetch(url)
        return FetchedPage(
            url=url,
            final_url=url.replace("://example.com", "://www.example.com"),
            status=200,
            html=fetched.html,
        )


class GatedFetcher(FakeFetcher):
    """Holds the seed until the test has looked at the idle workers."""

    def __init__(self, pages):
        super().__init__(pages)
        self.scheduler = None
        self.idle_while_seed_in_flight = None

    async def fetch(self, url):
        if url == "https://example.com/":
            for _ in range(5):
                await asyncio.sleep(0)
            self.idle_while_seed_in_flight = self.scheduler.idle_workers
        return await super().fetch(url)


class TestWorkers(SchedulerTestCase):
    async def test_links_survive_cross_host_redirect(self):
        fetcher = RedirectingFetcher(SITE)
        scheduler = self.scheduler(fetcher)
        await scheduler.run()
        self.assertEqual(sorted(fetcher.calls), sorted(SITE))
        self.assertEqual(scheduler.successful_pages, 3)

    async def test_idle_workers_wait_for_work(self):
        fetcher = GatedFetcher(SITE)
        scheduler = self.scheduler(fetcher, concurrency=3)
        fetcher.scheduler = scheduler
        await scheduler.run()
        self.assertEqual(fetcher.idle_while_seed_in_flight, 2)
        self.assertEqual(scheduler.idle_workers, 0)
        self.assertEqual(scheduler.successful_pages, 3)
        self.assert_invariants(scheduler)


class TestFailures(SchedulerTestCase):
    async def test_rate_limited_then_ok(self):
        fetcher = FakeFetcher(
            {"https://example.com/": page("Home")},
            errors={"https://example.com/": [rate_limited(), rate_limited()]},
        )
        scheduler = self.scheduler(fetcher, max_retries=3)
        await scheduler.run()

        self.assertEqual(len(fetcher.calls), 3)
        self.assertEqual([r.url for r in scheduler.sitemap], ["https://example.com/"])
        self.assertEqual(scheduler.backoff.increases, 2)
        self.assertEqual(scheduler.failed_pages, 0)
        self.assert_invariants(scheduler)

    async def test_backoff_delay_doubles(self):
        fetcher = FakeFetcher(
            {"https://example.com/": page("Home")},
            errors={"https://example.com/": [rate_limited()]},
        )
        scheduler = self.scheduler(fetcher, initial_delay=0.01, max_delay=1.0)
        with patch.object(scheduler.backoff, "on_success") as on_success:
            await scheduler.run()
        on_success.assert_called_once()
        self.assertAlmostEqual(scheduler.backoff.delay, 0.02)

    async def test_retries_exhausted(self):
        fetcher = FakeFetcher(
            {"https://example.com/": page("Home")},
            errors={"https://example.com/": [rate_limited() for _ in range(5)]},
        )
        scheduler = self.scheduler(fetcher, max_retries=2)
        await scheduler.run()

        self.assertEqual(len(fetcher.calls), 3)
        self.assertEqual(scheduler.sitemap, [])
        self.assertEqual(scheduler.failed_pages, 1)
        self.assertEqual(scheduler.failures[0].url, "https://example.com/")
        self.assertEqual(self.progress_events()[-1]["progress"], 100)
        self.assert_invariants(scheduler)

    async def test_timeouts_are_retried_without_backoff(self):
        fetcher = FakeFetcher(
            {"https://example.com/": page("Home")},
            errors={"https://example.com/": [FetchError(FetchError.TIMEOUT, "timed out")]},
        )
        scheduler = self.scheduler(fetcher)
        await scheduler.run()
        self.assertEqual(scheduler.successful_pages, 1)
        self.assertEqual(scheduler.backoff.increases, 0)

    async def test_not_found_is_not_retried(self):
        fetcher = FakeFetcher({"https://example.com/": page("Home", "/missing")})
        scheduler = self.scheduler(fetcher)
        await scheduler.run()

        self.assertEqual(fetcher.calls.count("https://example.com/missing"), 1)
        self.assertEqual(scheduler.failed_pages, 1)
        self.assertEqual(scheduler.successful_pages, 1)
        self.assertIn("HTTP 404", scheduler.failures[0].error)
        sitemap = (self.out / "sitemap.md").read_text()
        self.assertIn("## Failed Pages (1)", sitemap)
        self.assert_invariants(scheduler)

    async def test_invalid_url_is_dropped(self):
        fetcher = FakeFetcher(
            {"https://example.com/": page("Home", "/bad")},
            errors={"https://example.com/bad": [FetchError(FetchError.INVALID_URL, "bad url")]},
        )
        scheduler = self.scheduler(fetcher)
        await scheduler.run()

        self.assertEqual(scheduler.failed_pages, 0)
        self.assertIn("https://example.com/bad", scheduler.frontier.dropped)
        self.assert_invariants(scheduler)

    async def test_processing_error_counts_as_failure(self):
        scheduler = self.scheduler(FakeFetcher({"https://example.com/": page("Home")}))
        scheduler.output.write_page = MagicMock(side_effect=OSError("disk full"))
        await scheduler.run()

        self.assertEqual(scheduler.failed_pages, 1)
        self.assertIn("processing error", scheduler.failures[0].error)
        self.assertEqual(scheduler.state, CrawlState.TERMINATED)

    async def test_unwritable_output_is_fatal(self):
        blocker = Path(self._tmp.name) / "blocker"
        blocker.write_text("x")
        scheduler = CrawlScheduler(
            self.settings(output_dir=blocker / "run"),
            fetcher=FakeFetcher(SITE),
            session=MagicMock(),
            progress_stream=self.stream,
        )
        with self.assertRaises(FatalScrapeError):
            await scheduler.run()
        self.assertIsInstance(scheduler.error, FatalScrapeError)
        self.assertEqual(scheduler.state, CrawlState.TERMINATED)


class TestResume(SchedulerTestCase):
    async def test_resume_skips_visited(self):
        self.out.mkdir(parents=True)
        (self.out / "state.json").write_text(
            json.dumps(
                {
                    "visited": ["https://example.com/", "https://example.com/about"],
                    "toVisit": ["https://example.com/contact", "https://example.com/about"],
                    "sitemap": [
                        {"url": "https://example.com/", "title": "Home", "filename": "index.md"},
                        {"url": "https://example.com/about", "title": "About", "filename": "about.md"},
                    ],
                    "successfulPages": 2,
                    "failedPages": 0,
                    "uniqueUrlsDiscovered": [
                        "https://example.com/",
                        "https://example.com/about",
                        "https://example.com/contact",
                    ],
                }
            )
        )
        fetcher = FakeFetcher(SITE)
        scheduler = self.scheduler(fetcher)
        await scheduler.run()

        self.assertEqual(fetcher.calls, ["https://example.com/contact"])
        self.assertEqual(scheduler.successful_pages, 3)
        state = json.loads((self.out / "state.json").read_text())
        self.assertEqual(state["totalPages"], 3)
        self.assert_invariants(scheduler)

    async def test_no_resume_starts_over(self):
        self.out.mkdir(parents=True)
        (self.out / "state.json").write_text(
            json.dumps({"visited": ["https://example.com/"], "toVisit": [], "successfulPages": 1})
        )
        fetcher = FakeFetcher(SITE)
        scheduler = self.scheduler(fetcher, resume=False)
        await scheduler.run()
        self.assertIn("https://example.com/", fetcher.calls)
        self.assertEqual(scheduler.successful_pages, 3)

    async def test_dry_run_writes_nothing(self):
        fetcher = FakeFetcher(SITE)
        scheduler = self.scheduler(fetcher, dry_run=True)
        await scheduler.run()
        self.assertEqual(fetcher.calls, [])
        self.assertEqual(self.stream.getvalue().splitlines(), ["https://example.com/"])
        self.assertFalse(self.out.exists())


class TestExtras(SchedulerTestCase):
    async def test_images_are_downloaded(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, content=b"\x89PNG")
        html = page("Home", extra='<img src="/img/cat.png" alt="Cat"><img src="/img/cat.png" alt="Again">')
        scheduler = CrawlScheduler(
            self.settings(download_images=True),
            fetcher=FakeFetcher({"https://example.com/": html}),
            session=session,
            progress_stream=self.stream,
        )
        await scheduler.run()

        assets = list((self.out / "assets").iterdir())
        self.assertEqual(len(assets), 1)
        self.assertEqual(len(scheduler.downloaded_images), 1)
        self.assertEqual(scheduler.downloaded_images[0]["original"], "https://example.com/img/cat.png")
        index = (self.out / "pages" / "index.md").read_text()
        self.assertIn(f"[Cat](../assets/{assets[0].name})", index)
        session.get.assert_called_once()

    async def test_webhook_is_sent(self):
        with patch("site_scraper.send_webhook") as send:
            await self.scheduler(FakeFetcher(SITE), webhook="https://hooks.example.net/x").run()
        send.assert_called_once()
        url, payload = send.call_args.args[1:3]
        self.assertEqual(url, "https://hooks.example.net/x")
        self.assertEqual(payload["successfulPages"], 3)
        self.assertEqual(payload["domain"], "example.com")


if __name__ == "__main__":
    unittest.main()
