"""User-facing message texts."""

from __future__ import annotations

from pyvalet.results import FailureReason

WELCOME = "Hi! Welcome to Automatic Valet Parking."
CHECKIN_HINT = "Reply 'check-in' to park your car."
ASK_PLATE = "Please provide your car license plate number:"
ASK_OWNER = "Please provide the owner's full name:"
ASK_MODEL = "Please provide the car model:"
ASK_CONTACT = "Please provide your contact number:"
ASK_STATUS = "Reply 'free' if you are ready for new cars or 'busy' to pause assignments."

INVALID_PLATE = "That does not look like a number plate. Use 3 to 15 letters, digits or dashes:"
INVALID_OWNER = "Please send the owner's full name (up to 80 characters):"
INVALID_MODEL = "Please send the car model (up to 60 characters):"
INVALID_CONTACT = "Please send a valid phone number (7 to 15 digits):"
INVALID_STATUS = "Status unchanged. Send 'status' again and reply 'free' or 'busy'."
INVALID_QR = "Invalid QR code format. Please scan a valid valet QR code."

CANCELLED = "Check-in cancelled. Send 'hi' whenever you want to start again."
NOT_A_DRIVER = "You are not authorized to do this. Only registered drivers can scan QR codes or change status."

HELP_IDLE = "Send 'hi' to check in a car or 'retrieval' to get your parked car back."
HELP_CHECKIN_CONFIRM = "Reply 'check-in' to continue, or 'cancel' to stop."
HELP_PHOTO = "Photos are only accepted from drivers who are parking a car."

CHECKIN_QR_CAPTION = "Scan this QR code at the parking gate for check-in."
RETRIEVAL_QR_CAPTION = "Show this QR code to your driver when the car is handed back."

PHOTO_UPLOAD_FAILED = "We could not upload the photo. Please send it again."

_FAILURES: dict[FailureReason, str] = {
    FailureReason.NO_FREE_SLOT: "No free slots available right now. Please scan again in a few minutes.",
    FailureReason.NO_FREE_DRIVER: "No drivers are currently available. Please try again later.",
    FailureReason.TOKEN_INVALID: "Invalid QR code. It is not known to the valet service.",
    FailureReason.TOKEN_EXPIRED: "This QR code has expired. The owner can request a new one.",
    FailureReason.TOKEN_MISMATCH: "QR code does not match car or owner details.",
    FailureReason.TOKEN_ALREADY_USED: "This QR code has already been used.",
    FailureReason.UNKNOWN_CAR: "QR code does not match any car on record.",
    FailureReason.UNKNOWN_DRIVER: "You are not registered as a driver.",
    FailureReason.NO_ASSIGNED_CAR: "You have no checked-in car waiting to be parked.",
    FailureReason.NO_PARKED_CAR: "No parked car found for your phone number.",
    FailureReason.WRONG_STATE: "This car is not in a state that allows this action.",
    FailureReason.DRIVER_MISMATCH: "You are not the assigned driver for this car retrieval.",
    FailureReason.DUPLICATE_PLATE: "A car with this number plate is already with the valet.",
    FailureReason.DUPLICATE_PHONE: "A driver with this phone number is already registered.",
    FailureReason.STORE_UNAVAILABLE: "The valet service could not save this change. Please try again.",
}


def failure_message(reason: FailureReason) -> str:
    return _FAILURES[reason]


def checkin_qr_ready(plate: str, link: str) -> str:
    return f"Your check-in QR code for {plate} is ready. Please scan it at the parking gate. QR Link: {link}"


def owner_checked_in(plate: str, slot_number: int, driver_name: str) -> str:
    return f"Your car {plate} checked in at Slot [{slot_number}] by Driver [{driver_name}]."


def driver_assigned(plate: str, slot_number: int) -> str:
    return f"Assigned Car [{plate}]. Please park it at Slot [{slot_number}] and send a photo when done."


def owner_parked(plate: str, slot_number: int) -> str:
    return f"Your car {plate} is parked at Slot [{slot_number}]. Send 'retrieval' when you need it back."


def driver_parked(plate: str) -> str:
    return f"Thanks! {plate} is marked as parked."


def owner_retrieval_requested(plate: str, driver_name: str, driver_phone: str, link: str) -> str:
    return (
        f"Your retrieval request for car {plate} has been sent. Driver {driver_name} ({driver_phone}) "
        f"has been assigned and will contact you shortly. Retrieval QR Link: {link}"
    )


def driver_retrieval_assigned(plate: str, owner_name: str, owner_phone: str, slot_number: int) -> str:
    return (
        f"New retrieval request for car {plate} (Owner: {owner_name}, Phone: {owner_phone}). "
        f"Please proceed to Slot {slot_number} for retrieval."
    )


def owner_retrieved(plate: str) -> str:
    return f"Your car {plate} has been successfully retrieved."


def driver_retrieved(plate: str) -> str:
    return f"Car retrieval process completed for {plate}."


def driver_status_changed(available: bool) -> str:
    return "You are now free for new assignments." if available else "You are now marked busy."


def scanner_handoff(plate: str, slot_number: int, driver_name: str) -> str:
    return f"Car [{plate}] checked in at Slot [{slot_number}] and assigned to Driver [{driver_name}]."
