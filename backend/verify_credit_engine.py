from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.models.credit_ledger import CreditTransaction
from app.models.customer import Customer  # noqa: F401
from app.services.credits_engine import adjust_credits, get_balance
from app.services.generation.billing import charge_generation, commit_type_for_me_success, refund_on_failure


def main() -> None:
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        pass_id = "pass:user:verify"
        adjust_credits(db, pass_id, 20, reason="topup", ref_type="topup", ref_id="order-1")
        adjust_credits(db, pass_id, 20, reason="topup", ref_type="topup", ref_id="order-1")
        bal = get_balance(db, pass_id)["credits"]
        assert bal == 20, bal

        charge_generation(db, pass_id=pass_id, generation_id="gen-1", cost=10, reason="mma_video")
        charge_generation(db, pass_id=pass_id, generation_id="gen-1", cost=10, reason="mma_video")
        bal2 = get_balance(db, pass_id)["credits"]
        assert bal2 == 10, bal2

        refund_on_failure(db, pass_id=pass_id, generation_id="gen-1", cost=10, err=RuntimeError("timeout"))
        refund_on_failure(db, pass_id=pass_id, generation_id="gen-1", cost=10, err=RuntimeError("timeout"))
        bal3 = get_balance(db, pass_id)["credits"]
        assert bal3 == 20, bal3

        adjust_credits(db, pass_id, -500, reason="correction")
        bal4 = get_balance(db, pass_id)["credits"]
        assert bal4 == 0, bal4

        adjust_credits(db, pass_id, 1)
        for _ in range(10):
            commit_type_for_me_success(db, pass_id)
        bal5 = get_balance(db, pass_id)["credits"]
        assert bal5 == 0, bal5

        rows = db.query(CreditTransaction).filter(CreditTransaction.pass_id == pass_id).all()
        refs = [(r.ref_type, r.ref_id) for r in rows if r.ref_type]
        assert len(refs) == len(set(refs)), refs
        assert all(r.status == "succeeded" for r in rows)
    finally:
        db.close()


if __name__ == "__main__":
    main()
    print("OK")
