import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from database import Database
from email_scraper import ScraperConfig, scrape_emails
from models import JobType, WebsiteStatus
from social_scraper import scrape_social_media
from website_validator import normalize_url, validate_website

logger = logging.getLogger("PROCESSOR")

LEAD_NOT_FOUND = "Lead not found"


@dataclass
class ProcessResult:
    success: bool
    error: Optional[str] = None


class JobProcessor:
    """Runs one enrichment job against its lead and stores what it finds."""

    def __init__(self, db: Database, session=None, timeout_s: float = 10.0, scraper_config: Optional[ScraperConfig] = None):
        self.db = db
        self.session = session
        self.timeout_s = timeout_s
        self.scraper_config = scraper_config or ScraperConfig(timeout_s=timeout_s)
        self._handlers: Dict[JobType, Callable[[dict], ProcessResult]] = {
            JobType.WEBSITE_VALIDATION: self._validate_website,
            JobType.EMAIL_SCRAPING: self._scrape_emails,
            JobType.SOCIAL_SCRAPING: self._scrape_social,
        }

    def process(self, target_id: str, job_type) -> ProcessResult:
        try:
            job_type = JobType(job_type)
        except ValueError:
            return ProcessResult(success=False, error=f"Unknown job type: {job_type}")

        handler = self._handlers.get(job_type)
        if handler is None:
            return ProcessResult(success=False, error=f"Unknown job type: {job_type.value}")

        try:
            lead = self.db.get_lead(target_id)
            if not lead:
                logger.warning(f"Lead {target_id} not found for {job_type.value}")
                return ProcessResult(success=False, error=LEAD_NOT_FOUND)
            return handler(lead)
        except Exception as e:
            logger.error(f"{job_type.value} failed for lead {target_id}: {e}", exc_info=True)
            return ProcessResult(success=False, error=str(e) or f"Unknown error during {job_type.value}")

    def _validate_website(self, lead: dict) -> ProcessResult:
        if not lead.get("website"):
            self.db.update_lead(lead["id"], website_status=WebsiteStatus.NO_WEBSITE)
            logger.info(f"{lead['name']}: no website on record")
            return ProcessResult(success=True)

        result = validate_website(lead["website"], session=self.session, timeout_s=self.timeout_s)
        self.db.update_lead(lead["id"], website_status=result.status)
        if result.issues:
            logger.info(f"{lead['name']}: {result.status.value} ({'; '.join(result.issues)})")
        return ProcessResult(success=True)

    def _scrape_emails(self, lead: dict) -> ProcessResult:
        if not lead.get("website"):
            return ProcessResult(success=True)

        result = scrape_emails(lead["website"], config=self.scraper_config, session=self.session)
        if result.error:
            logger.warning(f"{lead['name']}: email scrape reported '{result.error}'")

        for info in result.emails:
            existing = self.db.find_contact_by_email(lead["id"], info.email)
            if existing:
                self.db.update_contact_info(
                    existing["id"],
                    email_source=info.source,
                    email_confidence=info.confidence,
                )
            else:
                self.db.add_contact_info(
                    lead["id"],
                    email=info.email,
                    email_source=info.source,
                    email_confidence=info.confidence,
                )

        logger.info(f"{lead['name']}: stored {len(result.emails)} email(s)")
        return ProcessResult(success=True)

    def _scrape_social(self, lead: dict) -> ProcessResult:
        if not lead.get("website"):
            return ProcessResult(success=True)

        url = normalize_url(lead["website"]) or lead["website"]
        result = scrape_social_media(url, session=self.session, timeout_s=self.timeout_s)
        found = {
            "facebook_url": result.facebook_url,
            "instagram_url": result.instagram_url,
            "linkedin_url": result.linkedin_url,
        }

        contacts = self.db.get_contact_info(lead["id"])
        if contacts:
            existing = contacts[0]
            # Never replace a stored profile with None
            updates = {k: v or existing.get(k) for k, v in found.items()}
            self.db.update_contact_info(existing["id"], **updates)
        elif any(found.values()):
            self.db.add_contact_info(lead["id"], **found)

        logger.info(f"{lead['name']}: {result.found_urls} social profile(s)")
        return ProcessResult(success=True)
