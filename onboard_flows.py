# onboard_flows.py
"""
Page tasks of the onboarding form and the flow registry.

Each page task fills one page of the form and triggers its submission. The
prologue pages are the same for every business type; FLOWS lists the pages
that follow for each business type, in the order Stripe shows them. The
summary page is run by the engine itself.
"""

from typing import Dict, Tuple

from onboard_runner import BusinessType, FlowContext, StepTask
from stripe_tasks import (
    click_submit_button,
    fill_out_address,
    fill_out_bank_account,
    fill_out_business_type,
    fill_out_business_website,
    fill_out_company_details,
    fill_out_country,
    fill_out_date_of_birth,
    fill_out_email,
    fill_out_identity_number,
    fill_out_industry,
    fill_out_name,
    fill_out_phone_number,
    fill_out_title,
    fill_out_verification_code,
)

# ---------------------------
# Prologue Pages
# ---------------------------

async def fill_out_get_paid_by_page(context: FlowContext):
    await fill_out_email(context)
    await fill_out_phone_number(context, "personal")
    await click_submit_button(context)

async def fill_out_verification_code_page(context: FlowContext):
    await fill_out_verification_code(context)

async def fill_out_tell_us_about_your_business_page(context: FlowContext):
    await fill_out_country(context)
    await fill_out_business_type(context)

PROLOGUE: Tuple[StepTask, ...] = (
    fill_out_get_paid_by_page,
    fill_out_verification_code_page,
    fill_out_tell_us_about_your_business_page,
)

# ---------------------------
# Business Pages
# ---------------------------

async def fill_out_personal_details_page(context: FlowContext):
    await fill_out_name(context)
    await fill_out_date_of_birth(context)
    await fill_out_address(context)
    await fill_out_phone_number(context, "personal")
    await fill_out_identity_number(context)
    await click_submit_button(context)

async def fill_out_representative_page(context: FlowContext):
    await fill_out_name(context)
    await fill_out_title(context)
    await fill_out_date_of_birth(context)
    await fill_out_address(context)
    await fill_out_phone_number(context, "personal")
    await fill_out_identity_number(context)
    await click_submit_button(context)

async def fill_out_business_details_page(context: FlowContext):
    await fill_out_industry(context)
    await fill_out_business_website(context)
    await click_submit_button(context)

async def fill_out_company_details_page(context: FlowContext):
    await fill_out_company_details(context)
    await fill_out_address(context)
    await fill_out_industry(context)
    await fill_out_business_website(context)
    await click_submit_button(context)

async def fill_out_owners_page(context: FlowContext):
    # The representative entered earlier is listed already; no further owners.
    await click_submit_button(context)

async def fill_out_directors_page(context: FlowContext):
    await click_submit_button(context)

async def fill_out_payout_details_page(context: FlowContext):
    await fill_out_bank_account(context)
    await click_submit_button(context)

# ---------------------------
# Flow Registry
# ---------------------------

FLOWS: Dict[BusinessType, Tuple[StepTask, ...]] = {
    "individual": (
        fill_out_personal_details_page,
        fill_out_business_details_page,
        fill_out_payout_details_page,
    ),
    "company": (
        fill_out_company_details_page,
        fill_out_representative_page,
        fill_out_owners_page,
        fill_out_directors_page,
        fill_out_payout_details_page,
    ),
    "non_profit": (
        fill_out_company_details_page,
        fill_out_representative_page,
        fill_out_directors_page,
        fill_out_payout_details_page,
    ),
}
