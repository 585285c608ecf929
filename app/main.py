import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import threading
from collections import deque
from datetime import date

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
import streamlit as st

from budgetsync import config, metrics
from budgetsync.controller import BudgetSessionController
from budgetsync.domain import ACCOUNT_TYPES, CREDIT_CARD, EXPENSE, INCOME
from budgetsync.events import NOTIFY
from budgetsync.functional import safe_category
from budgetsync.services import AccountService, CategoryService, TransactionService

config.configure_logging()
st.set_page_config(page_title="Budget Dashboard", layout="wide")


@st.cache_resource
def get_loop():
    # one loop for the whole process: store clients and realtime channels are bound to it
    loop = asyncio.new_event_loop()
    threading.Thread(target=loop.run_forever, name="budgetsync-loop", daemon=True).start()
    return loop


def run(coro):
    return asyncio.run_coroutine_threadsafe(coro, get_loop()).result()


@st.cache_resource
def get_store():
    return run(config.make_store())


store = get_store()

st.sidebar.markdown("### 👤 Profile")
nickname = st.sidebar.text_input("Nickname", value=st.session_state.get("nickname", "me"))
st.session_state["nickname"] = nickname
if not nickname:
    st.info("Enter a nickname to open your budgets.")
    st.stop()


async def open_session(user_id):
    controller = BudgetSessionController(store)
    # realtime notifications arrive on the loop thread
    toasts = deque()
    controller.bus.subscribe(NOTIFY, lambda event, payload: toasts.append(payload))
    await controller.start(user_id)
    if not controller.session.budgets and hasattr(store, "add_budget"):
        store.add_budget("Personal Budget", "personal", owner_id=user_id)
        await controller.refresh_budgets()
    return controller, toasts


# the controller and its channels live as long as the browser session
if st.session_state.get("user_id") != nickname:
    if "controller" in st.session_state:
        run(st.session_state.controller.stop())
    st.session_state.controller, st.session_state.toasts = run(open_session(nickname))
    st.session_state.user_id = nickname
    st.session_state.pop("budget_id", None)

controller = st.session_state.controller
session = controller.session

wanted = st.session_state.get("budget_id")
if wanted and session.find_budget(wanted) is None:
    # e.g. removed from it while away; the controller already moved on
    st.session_state["budget_id"] = wanted = session.current_budget_id
if wanted and wanted != session.current_budget_id and wanted != st.session_state.get("failed_budget_id"):
    try:
        run(controller.activate_budget(wanted, announce=False))
    except Exception:
        # reported through NOTIFY; retried once it is picked again
        st.session_state["failed_budget_id"] = wanted

if not session.budgets:
    st.warning("No budgets available.")
    st.stop()

names = {b.id: f"{b.name} ({b.type})" for b in session.budgets}
ids = list(names)
current = session.current_budget_id if session.current_budget_id in names else ids[0]
chosen = st.sidebar.selectbox("Budget", ids, index=ids.index(current), format_func=names.get)
if chosen != st.session_state.get("budget_id"):
    st.session_state["budget_id"] = chosen
    st.session_state.pop("failed_budget_id", None)
    st.rerun()

categories_svc = CategoryService(store, session, controller.state, controller.reload, controller.bus)
accounts_svc = AccountService(store, session, controller.state, controller.reload, controller.bus)
tx_svc = TransactionService(store, session, controller.state, controller.reload, controller.bus)

snapshot = controller.state.get()
cat_names = {c.id: c.name for c in snapshot.categories}


def tx_to_df(transactions):
    df = pd.DataFrame([
        {
            "date": t.date,
            "description": t.description,
            "amount": t.signed_amount,
            "category": safe_category(snapshot.categories, t.category_id).map(lambda c: c.name).get_or_else("Uncategorized"),
            "user": t.user_name or "",
        }
        for t in transactions
    ])
    if not df.empty:
        df["date"] = pd.to_datetime(df["date"], errors="coerce")
    return df


menu = st.sidebar.radio("Menu", ["🏠 Overview", "🧾 Transactions", "💳 Accounts", "🗂 Categories"])

if menu == "🏠 Overview":
    k1, k2, k3, k4 = st.columns(4)
    month = date.today().strftime("%Y-%m")
    totals = metrics.monthly_totals(snapshot, month)
    with k1:
        st.metric("Net Worth", f"{metrics.net_worth(snapshot):,.2f}")
    with k2:
        st.metric("Assets", f"{metrics.assets(snapshot):,.2f}")
    with k3:
        st.metric("Income this month", f"{totals['income']:,.2f}")
    with k4:
        st.metric("Spent this month", f"{totals['expenses']:,.2f}")

    df = tx_to_df(snapshot.transactions)
    if not df.empty and df["date"].notna().any():
        by_month = df.set_index("date").resample("ME")["amount"]
        inc_m = by_month.apply(lambda s: s[s > 0].sum())
        exp_m = by_month.apply(lambda s: -s[s < 0].sum())
        fig_ts = go.Figure()
        fig_ts.add_trace(go.Scatter(x=inc_m.index.strftime("%b %y"), y=inc_m.values, mode="lines+markers", name="Income"))
        fig_ts.add_trace(go.Scatter(x=exp_m.index.strftime("%b %y"), y=exp_m.values, mode="lines+markers", name="Expense"))
        fig_ts.update_layout(template="plotly_dark", margin=dict(t=30, b=10, l=10, r=10))
        st.plotly_chart(fig_ts, use_container_width=True)

    top = list(metrics.top_categories(snapshot, 6))
    if top:
        fig_cat = px.pie(pd.DataFrame(top, columns=["Category", "Total"]), values="Total", names="Category",
                         title="Spending by Category")
        st.plotly_chart(fig_cat, use_container_width=True)

    bills = metrics.upcoming_bills(snapshot, date.today())
    if bills:
        st.subheader("📅 Upcoming bills")
        for bill in bills:
            label = f"{bill.recurring.description}: {bill.recurring.amount:,.2f} due {bill.due.isoformat()}"
            st.warning(label) if bill.urgent else st.info(label)

elif menu == "🧾 Transactions":
    st.title("🧾 Transactions")
    with st.form("add_tx", clear_on_submit=True):
        c1, c2, c3 = st.columns(3)
        tx_date = c1.date_input("Date", value=date.today())
        description = c2.text_input("Description")
        amount = c3.number_input("Amount", min_value=0.0, step=1.0)
        tx_type = c1.selectbox("Type", [EXPENSE, INCOME])
        category = c2.selectbox("Category", [c.id for c in snapshot.categories], format_func=cat_names.get)
        if st.form_submit_button("Add"):
            run(tx_svc.create({
                "date": tx_date.isoformat(), "description": description, "amount": amount,
                "type": tx_type, "category_id": category, "user_id": nickname,
            }))
            st.rerun()

    if snapshot.last_import_batch_ids and st.button("↩ Undo last import"):
        run(tx_svc.undo_last_import())
        st.rerun()

    df = tx_to_df(snapshot.transactions)
    if not df.empty:
        st.dataframe(df, use_container_width=True)
        st.download_button("⬇ Download CSV", df.to_csv(index=False), file_name="transactions.csv")
    else:
        st.info("No transactions to display.")

elif menu == "💳 Accounts":
    st.title("💳 Accounts")
    for account, pct, status in metrics.credit_cards(snapshot):
        st.metric(account.name, f"{account.balance:,.2f} / {account.credit_limit:,.2f}", f"{pct:.1f}% ({status})",
                  delta_color="off")
    st.table(pd.DataFrame([{"Name": a.name, "Type": a.type, "Balance": a.balance} for a in snapshot.accounts]))

    with st.form("add_account", clear_on_submit=True):
        name = st.text_input("Name")
        acc_type = st.selectbox("Type", ACCOUNT_TYPES)
        balance = st.number_input("Balance", value=0.0)
        limit = st.number_input("Credit limit (credit cards only)", min_value=0.0, value=0.0)
        if st.form_submit_button("Save"):
            run(accounts_svc.create(name, acc_type, balance, limit if acc_type == CREDIT_CARD else None))
            st.rerun()

elif menu == "🗂 Categories":
    st.title("🗂 Categories")
    spent = metrics.category_spending(snapshot, date.today().strftime("%Y-%m"))
    for c in snapshot.categories:
        used = spent.get(c.id, 0.0)
        st.write(f"**{c.name}**: {used:,.2f} / {c.monthly_budget:,.2f} ({metrics.budget_status(used, c.monthly_budget)})")

    with st.form("add_category", clear_on_submit=True):
        name = st.text_input("Name")
        color = st.color_picker("Color", "#94a3b8")
        monthly = st.number_input("Monthly budget", min_value=0.0, value=0.0)
        if st.form_submit_button("Add"):
            run(categories_svc.create(name, color, monthly))
            st.rerun()

    doomed = st.selectbox("Delete category", [c.id for c in snapshot.categories], format_func=cat_names.get)
    if st.button("Delete"):
        run(categories_svc.delete(doomed))
        st.rerun()

toasts = st.session_state.toasts
while toasts:
    toast = toasts.popleft()
    st.toast(f"{toast['tag']}: {toast['message']}")
