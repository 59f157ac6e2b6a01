import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from docjobs.config import settings
from docjobs.models.job import Job, ScrapeType
from docjobs.utils.text_utils import clean_html

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when a page could not be fetched after all retries."""


class ProcessResult(BaseModel):
    content_length: int
    message: str


class JobProcessor:
    """
    Performs the ingestion work for one job: fetches web pages, or takes the
    inline content stored with repository and API-spec jobs, and extracts text.
    """
    def __init__(
        self,
        user_agent: Optional[str] = None,
        request_timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_base: float = 1.0,
    ):
        self.user_agent = user_agent or settings.CRAWLER_USER_AGENT
        self.request_timeout = request_timeout or settings.CRAWLER_REQUEST_TIMEOUT
        self.max_retries = settings.CRAWLER_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = backoff_base
        self.client = httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            timeout=self.request_timeout,
            follow_redirects=True
        )

    async def _fetch_url(self, url: str, job_id: int) -> str:
        """Fetches the content of a single URL with retries."""
        last_error = "no attempt made"
        for attempt in range(self.max_retries + 1): # +1 for initial attempt
            try:
                response = await self.client.get(url)
                response.raise_for_status()
                logger.info(f"Job {job_id}: Successfully fetched {url} (Attempt {attempt + 1})")
                return response.text
            except httpx.HTTPStatusError as e:
                last_error = f"HTTP {e.response.status_code}"
                logger.warning(f"Job {job_id}: HTTP error fetching {url}: {e} (Attempt {attempt + 1})")
            except httpx.RequestError as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(f"Job {job_id}: Request error fetching {url}: {e} (Attempt {attempt + 1})")
            if attempt < self.max_retries: # Only sleep if more retries are coming
                await asyncio.sleep(self.backoff_base * 2 ** attempt)  # Exponential backoff
        logger.error(f"Job {job_id}: Failed to fetch {url} after {self.max_retries + 1} attempts.")
        raise FetchError(f"Failed to fetch content: {last_error}")

    async def process(self, job: Job) -> ProcessResult:
        """
        Raises:
            FetchError: If a web page could not be fetched.
            ValueError: For an unsupported scrape type.
        """
        if job.scrape_type == ScrapeType.WEB_SCRAPE:
            html_content = await self._fetch_url(job.source_url, job.id)
            text = clean_html(html_content)
        elif job.scrape_type in (ScrapeType.GITLAB_REPO, ScrapeType.API_SPEC):
            # Content was collected when the batch was created
            text = job.source_url
        else:
            raise ValueError(f"Invalid scrape type: {job.scrape_type}")

        if not text or not text.strip():
            logger.info(f"Job {job.id}: no content found for {job.display_source}.")
            return ProcessResult(content_length=0, message="Skipped (no content)")

        logger.info(f"Job {job.id}: processed {job.display_source} ({len(text)} chars).")
        return ProcessResult(content_length=len(text), message="Completed processing")

    async def close(self):
        await self.client.aclose()
