# stripe_tasks.py
"""
Field-filling actions for the Stripe Connect Express onboarding form.

Every function takes the FlowContext of the running flow and either completes
its action or raises. Locators prefer accessible labels and data-testid
attributes since Stripe's class names change between releases.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Literal, Optional

from onboard_errors import FieldNotFoundError

if TYPE_CHECKING:
    from onboard_runner import FlowContext

logger = logging.getLogger("OnboardRunner.tasks")

FIELD_TIMEOUT_MS = 10000

# Stripe accepts this SMS code for every test-mode phone number.
TEST_VERIFICATION_CODE = "000000"

BUSINESS_TYPE_LABELS = {
    "individual": "Individual",
    "company": "Company",
    "non_profit": "Non-profit organization",
}


def _label(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.I)


async def fill_field(context: FlowContext, label_pattern: str, value: str):
    """Fill the first input whose accessible label matches label_pattern."""
    locator = context.page.get_by_label(_label(label_pattern)).first
    await locator.fill(value, timeout=FIELD_TIMEOUT_MS)
    logger.debug(f"Filled field /{label_pattern}/")


async def type_field(context: FlowContext, label_pattern: str, value: str):
    """Type value key by key, for masked inputs that reformat while typing."""
    locator = context.page.get_by_label(_label(label_pattern)).first
    await locator.fill("", timeout=FIELD_TIMEOUT_MS)
    await locator.press_sequentially(value)
    logger.debug(f"Typed into field /{label_pattern}/")


async def fill_field_if_present(context: FlowContext, label_pattern: str, value: Optional[str]) -> bool:
    if not value:
        return False
    locator = context.page.get_by_label(_label(label_pattern))
    if await locator.count() == 0:
        logger.debug(f"Optional field /{label_pattern}/ not on page, skipping")
        return False
    await locator.first.fill(value, timeout=FIELD_TIMEOUT_MS)
    return True


async def select_option_if_present(context: FlowContext, label_pattern: str, value: Optional[str]) -> bool:
    if not value:
        return False
    locator = context.page.get_by_label(_label(label_pattern))
    if await locator.count() == 0:
        return False
    await locator.first.select_option(value, timeout=FIELD_TIMEOUT_MS)
    return True


async def click_submit_button(context: FlowContext, testid: Optional[str] = None):
    """Click the page's submit button, or the button with the given data-testid."""
    selector = f'[data-testid="{testid}"]' if testid else 'button[type="submit"]'
    button = await context.session.query_one(selector)
    if not button:
        raise FieldNotFoundError(f"Submit button '{selector}' not found on page")
    await context.session.click(button)


# ---------------------------
# Contact Details
# ---------------------------

async def fill_out_email(context: FlowContext):
    await fill_field(context, r"email", context.values.email)


async def fill_out_phone_number(context: FlowContext, kind: Literal["personal", "company"] = "personal"):
    number = context.values.phone if kind == "personal" else context.values.company_phone
    await type_field(context, r"phone", number)


async def fill_out_verification_code(context: FlowContext):
    page = context.page
    test_code_button = page.get_by_role("button", name=_label(r"use test code"))
    if await test_code_button.count() > 0:
        await test_code_button.first.click(timeout=FIELD_TIMEOUT_MS)
        return

    code_input = page.locator('input[autocomplete="one-time-code"]').first
    await code_input.click(timeout=FIELD_TIMEOUT_MS)
    await page.keyboard.type(TEST_VERIFICATION_CODE)


# ---------------------------
# Business Type
# ---------------------------

async def fill_out_country(context: FlowContext):
    if not await select_option_if_present(context, r"country", context.values.country):
        raise FieldNotFoundError("Country selector not found on page")


async def fill_out_business_type(context: FlowContext):
    label = BUSINESS_TYPE_LABELS[context.values.business_type]
    page = context.page
    radio = page.get_by_role("radio", name=_label(rf"^{re.escape(label)}"))
    if await radio.count() > 0:
        await radio.first.check(timeout=FIELD_TIMEOUT_MS)
    else:
        await page.get_by_label(_label(r"type of business|business type")).first.select_option(
            label=label, timeout=FIELD_TIMEOUT_MS
        )
    await click_submit_button(context)


# ---------------------------
# Personal Details
# ---------------------------

async def fill_out_name(context: FlowContext):
    await fill_field(context, r"first name", context.values.first_name)
    await fill_field(context, r"last name", context.values.last_name)


async def fill_out_date_of_birth(context: FlowContext):
    await type_field(context, r"date of birth", context.values.date_of_birth)


async def fill_out_address(context: FlowContext):
    address = context.values.address
    await fill_field(context, r"^(street )?address( line 1)?$", address.line1)
    await fill_field_if_present(context, r"address line 2|apartment|suite", address.line2)
    await fill_field(context, r"city", address.city)
    await select_option_if_present(context, r"^state", address.state)
    await fill_field(context, r"zip|postal code", address.zip)


async def fill_out_identity_number(context: FlowContext):
    values = context.values
    if values.country == "US":
        if not await fill_field_if_present(context, r"last 4 digits", values.ssn_last_4):
            await fill_field(context, r"social security number", values.id_number)
    else:
        await fill_field_if_present(context, r"(personal )?id number|cpr", values.id_number)


async def fill_out_title(context: FlowContext):
    await fill_field(context, r"job title|title", context.values.title)


# ---------------------------
# Business Details
# ---------------------------

async def fill_out_company_details(context: FlowContext):
    values = context.values
    await fill_field(context, r"legal (business )?name|company name", values.company_name)
    if values.country == "US":
        await fill_field(context, r"employer identification number|ein|tax id", values.company_tax_id)
    else:
        await fill_field_if_present(context, r"company number|cvr|registration number", values.company_tax_id)
    await fill_field_if_present(context, r"business phone|company phone", values.company_phone)


async def fill_out_business_website(context: FlowContext):
    await fill_field(context, r"website", context.values.company_url)


async def fill_out_industry(context: FlowContext):
    industry = context.page.get_by_label(_label(r"industry"))
    if await industry.count() == 0:
        return
    # The first entry of the industry list is a placeholder.
    await industry.first.select_option(index=1, timeout=FIELD_TIMEOUT_MS)


# ---------------------------
# Payout Details
# ---------------------------

async def fill_out_bank_account(context: FlowContext):
    values = context.values
    if values.routing_number:
        await fill_field(context, r"routing number", values.routing_number)
        await fill_field(context, r"^account number", values.account_number)
        await fill_field_if_present(context, r"confirm account number", values.account_number)
    else:
        await fill_field(context, r"iban", values.account_number)
        await fill_field_if_present(context, r"confirm iban", values.account_number)
