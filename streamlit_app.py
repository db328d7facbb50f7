import streamlit as st
import pandas as pd
import plotly.express as px
import requests
import os
import logging
from datetime import datetime

from race_cache import RaceTransactionCache
from wagering import (
    DEFAULT_TAX_RATE, BetTransaction, Direction, Horse, Market, Mode,
    ValidationError, aggregate, ledger_totals, preview_settlement, price_range,
    validate_and_build,
)
import dotenv
dotenv.load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Configure page
st.set_page_config(
    page_title="Race Book Ledger",
    page_icon="🐎",
    layout="wide",
    initial_sidebar_state="expanded"
)

# API configuration
API_BASE_URL = os.environ.get("API_BASE_URL", "http://localhost:8000")


def _market() -> Market:
    return st.session_state.get("market", Market.LOCAL)


def _fetch_race(race_id: int):
    """Read one race's transactions from the API for the current market."""
    response = requests.get(
        f"{API_BASE_URL}/api/bet-transactions",
        params={"market": int(_market()), "race_id": race_id},
    )
    response.raise_for_status()
    return [BetTransaction.from_dict(t) for t in response.json()["transactions"]]


def get_cache() -> RaceTransactionCache:
    if "race_cache" not in st.session_state:
        st.session_state.race_cache = RaceTransactionCache(_fetch_race)
    return st.session_state.race_cache


def fetch_races():
    response = requests.get(f"{API_BASE_URL}/api/races", params={"market": int(_market())})
    response.raise_for_status()
    return response.json()["races"]


def fetch_horses(race_id: int):
    response = requests.get(
        f"{API_BASE_URL}/api/races/{race_id}/horses", params={"market": int(_market())}
    )
    if response.status_code == 404:
        return None
    response.raise_for_status()
    return [Horse.from_dict(h) for h in response.json()["horses"]]


def market_selector():
    choice = st.sidebar.radio(
        "Market",
        [Market.LOCAL, Market.INTERNATIONAL],
        format_func=lambda m: m.label,
        index=int(_market()),
    )
    if choice is not _market():
        # cached races belong to the other ledger
        get_cache().invalidate_all()
        st.session_state.market = choice
        logger.info(f"Market switched to {choice.label}")


def main():
    st.title("🐎 Race Book Ledger")
    st.markdown("Record bets per race and horse and watch each horse's books, profit/loss and average price")

    # Sidebar
    st.sidebar.header("Navigation")
    market_selector()
    page = st.sidebar.selectbox(
        "Choose a page",
        ["Bet Slip", "Exposure", "Ledger", "Race Cards", "API Status"]
    )

    if page == "Bet Slip":
        bet_slip_page()
    elif page == "Exposure":
        exposure_page()
    elif page == "Ledger":
        ledger_page()
    elif page == "Race Cards":
        race_cards_page()
    elif page == "API Status":
        api_status_page()


def select_race_and_horse(key: str):
    """Race and horse pickers; returns (race_id, horses, horse) with Nones when unset."""
    races = fetch_races()
    if not races:
        st.info("No race cards yet. Add one on the 'Race Cards' page.")
        return None, None, None

    race = st.selectbox(
        "Race",
        options=races,
        format_func=lambda r: f"{r['id']} - {r['name']}",
        key=f"{key}_race",
    )
    horses = fetch_horses(race["id"]) or []
    if not horses:
        return race["id"], horses, None
    horse = st.selectbox(
        "Horse",
        options=horses,
        format_func=lambda h: f"{h.id} - {h.name} ({h.quoted_price:g})",
        key=f"{key}_horse",
    )
    return race["id"], horses, horse


def sync_slip_selection(state, selection) -> None:
    """Drop a recent client's price once the race/horse selection changes."""
    if state.get("slip_selection") != selection:
        state.pop("slip_price", None)
        state["slip_selection"] = selection


def bet_slip_page():
    st.header("🧾 Bet Slip")

    try:
        race_id, horses, horse = select_race_and_horse("slip")
    except Exception as e:
        st.error(f"❌ Cannot load race cards: {str(e)}")
        return
    if race_id is None:
        return

    sync_slip_selection(st.session_state, (race_id, horse.id if horse else None))

    # Recent clients
    try:
        response = requests.get(
            f"{API_BASE_URL}/api/recent-clients", params={"market": int(_market())}
        )
        recent = response.json() if response.status_code == 200 else []
    except Exception as e:
        logger.error(f"Error fetching recent clients: {e}")
        recent = []

    if recent:
        st.caption("Recent clients")
        cols = st.columns(len(recent))
        for col, entry in zip(cols, recent):
            with col:
                if st.button(entry["bettor_name"], key=f"recent_{entry['bettor_name']}"):
                    st.session_state.slip_name = entry["bettor_name"]
                    st.session_state.slip_mode = Mode(entry["last_mode"])
                    if entry["last_price"] is not None:
                        st.session_state.slip_price = float(entry["last_price"])
                    st.session_state.slip_tax = float(entry["last_tax_rate"] or 0)

    col1, col2 = st.columns(2)
    with col1:
        bettor_name = st.text_input("Client name", key="slip_name")
        direction = st.radio("Direction", list(Direction), format_func=lambda d: d.value,
                             horizontal=True, key="slip_direction")
        mode = st.radio("Mode", list(Mode), format_func=lambda m: m.value,
                        horizontal=True, key="slip_mode")
    with col2:
        amount = st.number_input("Amount", min_value=0.0, step=1.0, key="slip_amount")
        low, high = price_range(mode)
        default_price = float(horse.quoted_price) if horse else 0.0
        quoted_price = st.number_input(
            f"Price ({low}-{high})", min_value=0.0,
            value=st.session_state.get("slip_price", default_price), step=1.0,
        )
        tax_rate = st.number_input("Tax %", min_value=0.0,
                                   value=st.session_state.get("slip_tax", float(DEFAULT_TAX_RATE)),
                                   step=0.5)
        remarks = st.text_input("Remarks", key="slip_remarks")

    st.metric("Settlement", f"{preview_settlement(direction, mode, amount, quoted_price):,.2f}")

    if st.button("💾 Save Bet", type="primary"):
        try:
            txn = validate_and_build(
                mode=mode,
                direction=direction,
                raw_amount=amount,
                quoted_price=quoted_price,
                bettor_name=bettor_name,
                race_id=race_id,
                horse_id=horse.id if horse else None,
                tax_rate=tax_rate,
                market=_market(),
                horse_name=horse.name if horse else "",
                remarks=remarks,
            )
        except ValidationError as e:
            st.error(f"❌ {e.message}")
            return

        try:
            response = requests.post(
                f"{API_BASE_URL}/api/bet-transaction",
                params={"market": int(_market())},
                json={
                    "race_id": txn.race_id,
                    "horse_id": txn.horse_id,
                    "bettor_name": txn.bettor_name,
                    "direction": txn.direction.value,
                    "mode": txn.mode.value,
                    "amount": amount,
                    "quoted_price": txn.quoted_price,
                    "tax_rate": txn.tax_rate,
                    "remarks": txn.remarks,
                },
            )
            if response.status_code == 201:
                stored = BetTransaction.from_dict(response.json()["data"])
                get_cache().append(race_id, stored)
                st.success(f"✅ Bet {stored.id} saved: {stored.bettor_name} "
                           f"{stored.direction.value} {stored.mode.value} @ {stored.quoted_price}")
            else:
                st.error(f"❌ Error saving bet: {response.text}")
        except Exception as e:
            st.error(f"❌ Error: {str(e)}")

    if horses is not None:
        show_exposure(race_id, horses)


def show_exposure(race_id: int, horses):
    try:
        snapshot = aggregate(race_id, get_cache().get(race_id), horses)
    except Exception as e:
        st.error(f"Error computing exposure: {str(e)}")
        return

    df = pd.DataFrame([
        {
            "#": h.horse_id,
            "Horse": h.name,
            "Books": h.books,
            "P/L": h.profit_loss,
            "Avg": h.average_price,
        }
        for h in snapshot.horses
    ])

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Total Stake", f"{snapshot.total_stake:,.2f}")
    with col2:
        st.metric("Total Settlement", f"{snapshot.total_settlement:,.2f}")
    with col3:
        st.metric("Total Avg", snapshot.total_average_price)

    st.dataframe(df, use_container_width=True, hide_index=True)

    if not df.empty:
        fig = px.bar(
            df,
            x="Horse",
            y="P/L",
            title=f"Race {race_id} profit/loss by horse",
            color=df["P/L"] >= 0,
            color_discrete_map={True: "green", False: "red"},
        )
        fig.update_layout(showlegend=False)
        st.plotly_chart(fig, use_container_width=True)


def exposure_page():
    st.header("📊 Exposure")

    try:
        race_id, horses, _ = select_race_and_horse("exposure")
    except Exception as e:
        st.error(f"❌ Cannot load race cards: {str(e)}")
        return
    if race_id is None:
        return

    if st.button("🔄 Refresh from ledger"):
        get_cache().invalidate(race_id)

    show_exposure(race_id, horses)


def ledger_page():
    st.header("📒 Ledger")

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        client = st.text_input("Client contains")
    with col2:
        race_filter = st.number_input("Race", min_value=0, step=1, help="0 = all")
    with col3:
        horse_filter = st.number_input("Horse", min_value=0, step=1, help="0 = all")
    with col4:
        direction = st.selectbox("Direction", ["All", Direction.SALE.value, Direction.PURCHASE.value])

    params = {"market": int(_market()), "client": client}
    if race_filter:
        params["race_id"] = int(race_filter)
    if horse_filter:
        params["horse_id"] = int(horse_filter)
    if direction != "All":
        params["direction"] = direction

    try:
        response = requests.get(f"{API_BASE_URL}/api/bet-transactions", params=params)
        if response.status_code != 200:
            st.error(f"Error fetching ledger: {response.text}")
            return
        data = response.json()
    except Exception as e:
        st.error(f"Error: {str(e)}")
        return

    transactions = [BetTransaction.from_dict(t) for t in data["transactions"]]
    total_settlement, total_stake = ledger_totals(transactions)

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Transactions", len(transactions))
    with col2:
        st.metric("Total Settlement", f"{total_settlement:,.2f}")
    with col3:
        st.metric("Total Stake", f"{total_stake:,.2f}")

    if not transactions:
        st.info("No transactions match these filters")
        return

    df = pd.DataFrame([t.to_dict() for t in transactions])
    df["created_at"] = pd.to_datetime(df["created_at"])
    display_columns = ["id", "created_at", "race_id", "horse_id", "horse_name", "bettor_name",
                       "direction", "mode", "quoted_price", "stake_amount",
                       "settlement_amount", "tax_rate", "cancelled", "remarks"]
    st.dataframe(df[display_columns], use_container_width=True, hide_index=True)

    st.subheader("Cancel / restore")
    selected = st.selectbox(
        "Transaction",
        options=transactions,
        format_func=lambda t: (f"#{t.id} race {t.race_id} horse {t.horse_id} {t.bettor_name} "
                               f"{t.direction.value} {'(cancelled)' if t.cancelled else ''}"),
    )
    if st.button("Toggle cancelled"):
        try:
            response = requests.patch(f"{API_BASE_URL}/api/bet-transaction/{selected.id}", json={})
            if response.status_code == 200:
                updated = BetTransaction.from_dict(response.json()["data"])
                get_cache().replace(updated)
                st.success(f"✅ Bet {updated.id} {'cancelled' if updated.cancelled else 'restored'}")
                st.rerun()
            else:
                st.error(f"❌ Error updating bet: {response.text}")
        except Exception as e:
            st.error(f"❌ Error: {str(e)}")


def race_cards_page():
    st.header("🏇 Race Cards")

    with st.form("race_card"):
        col1, col2 = st.columns([1, 3])
        with col1:
            race_id = st.number_input("Race number", min_value=1, step=1)
        with col2:
            name = st.text_input("Race name")
        horses_df = st.data_editor(
            pd.DataFrame({"id": [1], "name": [""], "quoted_price": [0.0]}),
            num_rows="dynamic",
            use_container_width=True,
        )
        submitted = st.form_submit_button("💾 Save Race Card", type="primary")

    if submitted:
        horses = [
            {"id": int(row["id"]), "name": str(row["name"] or ""),
             "quoted_price": float(row["quoted_price"] or 0)}
            for _, row in horses_df.dropna(subset=["id"]).iterrows()
        ]
        try:
            response = requests.put(
                f"{API_BASE_URL}/api/races/{int(race_id)}",
                params={"market": int(_market())},
                json={"name": name, "horses": horses},
            )
            if response.status_code == 200:
                st.success(f"✅ Race {int(race_id)} saved with {len(horses)} horses")
            else:
                st.error(f"❌ Error saving race card: {response.text}")
        except Exception as e:
            st.error(f"❌ Error: {str(e)}")

    st.subheader("Scratch / rule 4 cutoffs")
    try:
        race_id, _, horse = select_race_and_horse("cutoff")
    except Exception as e:
        st.error(f"❌ Cannot load race cards: {str(e)}")
        return
    if horse is None:
        return

    col1, col2, col3 = st.columns(3)
    with col1:
        scratch = st.text_input("Scratch cutoff (ISO time, blank = none)",
                                value=horse.scratch_cutoff.isoformat() if horse.scratch_cutoff else "")
    with col2:
        void = st.text_input("Rule 4 cutoff (ISO time, blank = none)",
                             value=horse.void_cutoff.isoformat() if horse.void_cutoff else "")
    with col3:
        deduction = st.number_input("Rule 4 deduction", min_value=0.0,
                                    value=float(horse.void_deduction), step=1.0)

    col1, col2 = st.columns(2)
    with col1:
        scratch_now = st.button("⏱ Scratch now")
        if scratch_now:
            scratch = datetime.now().astimezone().isoformat()
    with col2:
        apply = st.button("Apply cutoffs")

    if apply or scratch_now:
        try:
            response = requests.patch(
                f"{API_BASE_URL}/api/races/{race_id}/horses/{horse.id}",
                params={"market": int(_market())},
                json={"scratch_cutoff": scratch or None, "void_cutoff": void or None,
                      "void_deduction": deduction},
            )
            if response.status_code == 200:
                st.success(f"✅ Cutoffs updated for {horse.name}")
            else:
                st.error(f"❌ Error updating horse: {response.text}")
        except Exception as e:
            st.error(f"❌ Error: {str(e)}")

    st.subheader("Danger zone")
    if st.button(f"🗑 Clear {_market().label} race cards"):
        try:
            response = requests.delete(f"{API_BASE_URL}/api/races", params={"market": int(_market())})
            st.success(response.json().get("message", "Cleared"))
        except Exception as e:
            st.error(f"❌ Error: {str(e)}")


def api_status_page():
    st.header("🔧 API Status")

    try:
        # Health check
        response = requests.get(f"{API_BASE_URL}/api/health")

        if response.status_code == 200:
            health = response.json()
            st.success("✅ API is healthy")
            st.json(health)
        else:
            st.error("❌ API is not responding")

        # Ledger statistics
        st.subheader("📋 Ledger Statistics")
        try:
            stats_response = requests.get(f"{API_BASE_URL}/api/stats", params={"market": int(_market())})
            if stats_response.status_code == 200:
                stats = stats_response.json()

                col1, col2, col3, col4 = st.columns(4)
                with col1:
                    st.metric("Transactions", stats["transactions"])
                with col2:
                    st.metric("Cancelled", stats["cancelled"])
                with col3:
                    st.metric("Races with bets", stats["races_with_bets"])
                with col4:
                    st.metric("Clients", stats["distinct_bettors"])

                st.json(stats)
            else:
                st.error("❌ Could not fetch ledger statistics")
        except Exception as e:
            st.error(f"❌ Error checking ledger statistics: {str(e)}")

    except Exception as e:
        st.error(f"❌ Cannot connect to API: {str(e)}")
        st.info(f"Make sure the API server is running on {API_BASE_URL}")


if __name__ == "__main__":
    main()
