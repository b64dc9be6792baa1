from typing import Optional

from pydantic import BaseModel, Field

from route_orchestrator.domain.models import (
    Guideline,
    OnComplete,
    Route,
    Step,
    Term,
    Tool,
    ToolContext,
    ToolResult,
)
from route_orchestrator.llm.interface import LLMProvider
from route_orchestrator.services.agent import Agent
from route_orchestrator.services.persistence import PersistenceManager

# ==============================================================================
# TOOLS
# ==============================================================================

# Hotels with no rooms left, used to demonstrate the alternate path.
FULLY_BOOKED = {"grand budapest"}


def check_availability(ctx: ToolContext, hotelName: Optional[str] = None, date: Optional[str] = None) -> ToolResult:
    hotel = hotelName or ctx.data.get("hotelName")
    if not hotel:
        return ToolResult(success=False, error="No hotel name given")

    available = hotel.lower() not in FULLY_BOOKED
    data_update = {"available": available}
    if not available:
        # Sends the flow back to the hotel question.
        data_update = {"available": None, "hotelName": None, "unavailableHotel": hotel}
    return ToolResult(
        data={"hotel": hotel, "date": date or ctx.data.get("date"), "available": available},
        data_update=data_update,
    )


def create_booking_reference(ctx: ToolContext) -> ToolResult:
    hotel = str(ctx.data.get("hotelName", "")).upper().replace(" ", "")[:4]
    return ToolResult(
        data={"reference": f"{hotel}-{ctx.data.get('date', 'TBD')}"},
        data_update={"bookingReference": f"{hotel}-{ctx.data.get('date', 'TBD')}"},
    )


availability_tool = Tool(
    id="check_availability",
    handler=check_availability,
    description="Check whether a hotel has rooms on a given date.",
    parameters={
        "type": "object",
        "properties": {
            "hotelName": {"type": "string", "description": "Name of the hotel"},
            "date": {"type": "string", "description": "Check-in date (YYYY-MM-DD)"},
        },
        "required": ["hotelName"],
    },
)

reference_tool = Tool(
    id="create_booking_reference",
    handler=create_booking_reference,
    description="Create the booking reference once all details are confirmed.",
)

# ==============================================================================
# DATA MODELS
# ==============================================================================


class HotelBooking(BaseModel):
    hotelName: Optional[str] = Field(None, description="Name of the hotel")
    date: Optional[str] = Field(None, description="Check-in date (YYYY-MM-DD)")
    guests: Optional[int] = Field(None, description="Number of guests")


class FeedbackData(BaseModel):
    rating: Optional[int] = Field(None, description="Rating from 1 to 5")
    comment: Optional[str] = Field(None, description="Free-form feedback")


# ==============================================================================
# ROUTES
# ==============================================================================


def build_booking_route() -> Route:
    return Route(
        title="Book Hotel",
        description="Help the user book a hotel room.",
        when=["The user wants to book a hotel room or asks about hotel availability"],
        skip_if=["The user already has a confirmed booking"],
        steps=[
            Step(
                id="ask_hotel",
                description="Ask which hotel",
                prompt=(
                    "{% if data.unavailableHotel %}Explain that {{ data.unavailableHotel }} is fully booked. "
                    "{% endif %}Ask the user which hotel they would like to stay at."
                ),
                collect=["hotelName"],
            ),
            Step(
                id="ask_dates",
                description="Ask for the check-in date",
                prompt="Ask for the check-in date at {{ data.hotelName }}.",
                collect=["date"],
                requires=["hotelName"],
            ),
            Step(
                id="check_rooms",
                description="Check availability",
                prompt="Check availability with the check_availability tool and tell the user the result.",
                collect=["available"],
                requires=["hotelName", "date"],
                tools=["check_availability"],
            ),
            Step(
                id="ask_guests",
                description="Ask for the number of guests",
                prompt="Ask how many guests will stay.",
                collect=["guests"],
                requires=["hotelName", "date"],
                tools=["create_booking_reference"],
            ),
        ],
        required_fields=["hotelName", "date", "guests"],
        data_model=HotelBooking,
        on_complete=OnComplete(next_route="feedback", condition="The booking is confirmed"),
        rules=["Always confirm the hotel name and date before checking availability."],
        prohibitions=["Never promise a specific room type."],
        terms=[Term(name="Check-in", description="The date the guest arrives.", synonyms=["arrival"])],
        tools=[availability_tool],
    )


def build_feedback_route() -> Route:
    return Route(
        title="Feedback",
        description="Collect feedback about the booking experience.",
        when=["The user wants to give feedback or a booking was just completed"],
        steps=[
            Step(id="ask_rating", description="Ask for a rating", prompt="Ask for a rating from 1 to 5.", collect=["rating"]),
            Step(id="ask_comment", description="Ask for a comment", prompt="Ask if they have any other comments.", collect=["comment"]),
        ],
        required_fields=["rating"],
        optional_fields=["comment"],
        data_model=FeedbackData,
    )


def build_hotel_agent(llm: LLMProvider, persistence: Optional[PersistenceManager] = None) -> Agent:
    """The bundled demo agent served by the HTTP app."""
    agent = Agent(
        name="Stayfinder",
        llm=llm,
        description="A hotel booking assistant",
        goal="Book hotel rooms and collect feedback",
        personality="Friendly and concise",
        tools=[reference_tool],
        persistence=persistence,
        guidelines=[
            Guideline(condition="the user asks about prices", action="explain that prices are confirmed at check-in"),
        ],
    )
    agent.add_route(build_booking_route())
    agent.add_route(build_feedback_route())
    return agent
