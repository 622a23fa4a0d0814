from .db import (
    Base,
    get_session,
    create_all,
    fetch_condition_rows,
    fetch_message,
    fetch_condition_for_message,
    fetch_conditions_for_user,
    count_active_conditions,
    update_check_in,
    set_next_check,
    deactivate_condition,
    insert_delivery,
    get_delivery_record,
    record_view,
    log_delivery,
    delivery_log_activity,
    find_profile_by_phone,
    fetch_reminder_candidates,
    fetch_sent_reminder_offsets,
    record_sent_reminder,
    count_sent_reminders,
    ping,
    dispose_engine,
)  # noqa: F401
