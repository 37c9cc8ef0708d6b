from datetime import datetime, timezone

import streamlit as st

from frontend.api_client import APIError
from frontend.chat_store import Tab

TAB_LABELS = {Tab.ALL: "All", Tab.STARRED: "Starred", Tab.ARCHIVED: "Archived"}


def _time_ago(iso_str: str) -> str:
    """Convert ISO datetime string to relative time."""
    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    seconds = (datetime.now(timezone.utc) - dt).total_seconds()
    if seconds < 60:
        return "just now"
    elif seconds < 3600:
        return f"{int(seconds / 60)}m ago"
    elif seconds < 86400:
        return f"{int(seconds / 3600)}h ago"
    return f"{int(seconds / 86400)}d ago"


def _run(action, *args):
    """Run a controller action; failures are already rolled back, just show them."""
    try:
        action(*args)
    except APIError as exc:
        st.toast(exc.message)
    st.rerun()


def render_sidebar():
    controller = st.session_state.controller
    store = controller.store

    st.markdown(
        '<h1 style="background: linear-gradient(90deg, #667eea, #764ba2); '
        '-webkit-background-clip: text; -webkit-text-fill-color: transparent; '
        'font-size: 1.8em;">Promptly</h1>',
        unsafe_allow_html=True,
    )
    st.caption("Chat, refine, and keep the prompts that work")

    # --- Model selector ---
    models = st.session_state.get("models") or []
    if models:
        model_ids = [m["id"] for m in models]
        current_idx = model_ids.index(st.session_state.model_id) if st.session_state.model_id in model_ids else 0
        selected_idx = st.selectbox(
            "Model",
            range(len(models)),
            format_func=lambda i: f"{models[i].get('name', models[i]['id'])} ({models[i]['provider']})",
            index=current_idx,
        )
        st.session_state.model_id = model_ids[selected_idx]

    st.divider()

    if st.button("New Conversation", use_container_width=True, type="primary"):
        try:
            conv = controller.create_conversation()
            controller.open_conversation(conv.id)
        except APIError as exc:
            st.toast(exc.message)
        st.rerun()

    # --- Filters ---
    store.set_search_query(st.text_input("Search", value=store.ui_state.search_query))
    counts = store.counts_by_tab()
    tabs = list(Tab)
    selected_tab = st.radio(
        "Show",
        tabs,
        index=tabs.index(store.ui_state.active_tab),
        format_func=lambda t: f"{TAB_LABELS[t]} ({counts[t.value]})",
        horizontal=True,
    )
    store.set_active_tab(selected_tab)

    # --- Conversation list ---
    conversations = store.get_filtered_conversations()
    if not conversations:
        st.caption("No conversations")
    for conv in conversations[:50]:
        is_active = store.active_conversation_id == conv.id
        star = "★ " if conv.is_starred else ""
        unread = f" ({conv.unread_count})" if conv.unread_count else ""
        label = f"{star}{conv.title[:40]}{unread}"

        col1, col2, col3 = st.columns([5, 1, 1])
        with col1:
            if st.button(
                f"**{label}**" if is_active else label,
                key=f"conv_{conv.id}",
                use_container_width=True,
                disabled=is_active,
            ):
                _run(controller.open_conversation, conv.id)
            meta_parts = [p for p in (_time_ago(conv.updated_at), ", ".join(conv.tags)) if p]
            if meta_parts:
                st.caption(" · ".join(meta_parts))
            if conv.error:
                st.caption(f":red[{conv.error}]")
        with col2:
            if st.button("☆" if not conv.is_starred else "★", key=f"star_{conv.id}"):
                _run(controller.toggle_star, conv.id)
        with col3:
            if st.button("X", key=f"del_{conv.id}"):
                _run(controller.delete_conversation, conv.id)
