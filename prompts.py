"""
prompts.py — Prompt construction for itinerary generation.
"""

from schemas import TripRequest


def _day_word(days: int) -> str:
    return f"{days} day{'s' if days != 1 else ''}"


def build_itinerary_prompt(request: TripRequest) -> str:
    """Build the single user-turn prompt sent to the generation service."""
    days = request.trip_days
    dates = (
        f'{request.start_date or "not specified"} to {request.end_date or "not specified"}'
    )
    notes_block = (
        f'- Traveller notes: {request.notes}\n'
        f'  Honour these absolutely where they constrain the plan.\n'
        if request.notes else ''
    )

    return f"""You are a professional travel planner.
Write a COMPLETE, detailed itinerary for a trip to {request.destination}.

Trip details:
- Dates: {dates} ({_day_word(days)})
- Budget: {request.budget or 'not specified'}
- Interests: {request.interests or 'not specified'}
- Travellers: {request.people_count or '1'}
{notes_block}
Cover EVERY day from morning to evening:
- What to see (sights, museums, parks) with real names and addresses
- Where to eat (breakfast, lunch, dinner) with named places and their locations
- Local dishes, drinks and desserts worth trying
- How to get between stops (metro, bus, on foot) and roughly how long it takes
- What each place is like and who it suits
- Cheaper alternatives where the budget calls for them

Structure:
- One section per day, split into Morning, Afternoon and Evening
- Include opening hours where they matter
- Keep the route logistically sensible; do not zig-zag across the city

Finish the itinerary for all {_day_word(days)}. Do not stop part-way through.
Use Markdown for readability."""
