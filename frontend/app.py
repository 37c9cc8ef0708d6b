import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env so the Streamlit process sees the same env vars as the backend
load_dotenv(Path(__file__).parent.parent / ".env")

import streamlit as st
from frontend.api_client import APIClient, APIError
from frontend.chat_store import ChatStore
from frontend.sync_controller import SyncController
from frontend.components.sidebar import render_sidebar
from frontend.components.chat_view import render_chat
from frontend.components.usage_display import render_prompt_panel, render_usage_display

st.set_page_config(
    page_title="Promptly",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .stApp > header { background: linear-gradient(90deg, #667eea 0%, #764ba2 100%); }
    section[data-testid="stSidebar"] {
        background: linear-gradient(180deg, #1a1a2e 0%, #16213e 100%);
    }
    section[data-testid="stSidebar"] .stMarkdown { color: #e0e0e0; }
    .stChatMessage { border-radius: 12px; margin-bottom: 8px; }
    #MainMenu { visibility: hidden; }
    footer { visibility: hidden; }
</style>
""", unsafe_allow_html=True)

# --- Identity ---
# Sign-in lives outside this app; it only needs a stable user id.
if "user_id" not in st.session_state:
    st.session_state.user_id = os.environ.get("PROMPTLY_USER_ID", "")

if not st.session_state.user_id:
    st.markdown("### Sign in")
    user_id = st.text_input("User id", placeholder="you@example.com")
    if user_id.strip():
        st.session_state.user_id = user_id.strip()
        st.rerun()
    st.stop()

# --- Initialize session state ---
if "controller" not in st.session_state:
    api = APIClient(user_id=st.session_state.user_id)
    st.session_state.controller = SyncController(ChatStore(), api)
    try:
        api.health_check()
        st.session_state.controller.load_conversations()
        st.session_state.models = api.list_models()
    except APIError as exc:
        st.session_state.models = []
        st.warning(f"Backend unavailable: {exc.message}")
if "model_id" not in st.session_state:
    st.session_state.model_id = None

with st.sidebar:
    render_sidebar()
    st.divider()
    render_usage_display()
    render_prompt_panel()

render_chat()
