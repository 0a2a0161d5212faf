"""
Local store on MongoDB (motor).

Collections: clients, subscriptions, subscription_lines, price_history,
billing_products, sync_sessions. Documents carry their own string ``id``;
Mongo's ``_id`` is never exposed.
"""
import uuid

from pymongo import ReturnDocument

from schemas import LocalClient, LocalLine, LocalSubscription

NO_ID = {'_id': 0}


def new_id():
    return uuid.uuid4().hex


class MongoStore:
    def __init__(self, db):
        self.db = db

    # =========================================================================
    # SNAPSHOT READS (preview)
    # =========================================================================
    async def load_clients(self):
        docs = await self.db.clients.find({}, NO_ID).to_list(None)
        return [LocalClient.model_validate(d) for d in docs]

    async def load_subscriptions(self):
        subs = await self.db.subscriptions.find({}, NO_ID).to_list(None)
        lines = await self.db.subscription_lines.find({}, NO_ID).to_list(None)
        by_sub = {}
        for l in lines:
            by_sub.setdefault(l['subscription_id'], []).append(LocalLine.model_validate(l))
        return [LocalSubscription.model_validate(dict(s, lines=by_sub.get(s['id'], []))) for s in subs]

    async def load_products(self):
        return await self.db.billing_products.find({}, NO_ID).to_list(None)

    # =========================================================================
    # WRITES (commit)
    # =========================================================================
    async def find_subscription(self, external_id):
        return await self.db.subscriptions.find_one({'external_id': external_id}, NO_ID)

    async def insert_subscription(self, doc):
        doc = dict(doc, id=doc.get('id') or new_id())
        await self.db.subscriptions.insert_one(dict(doc))
        return doc['id']

    async def update_subscription(self, subscription_id, fields):
        await self.db.subscriptions.update_one({'id': subscription_id}, {'$set': fields})

    async def list_lines(self, subscription_id):
        return await self.db.subscription_lines.find({'subscription_id': subscription_id}, NO_ID).to_list(None)

    async def insert_line(self, doc):
        doc = dict(doc, id=doc.get('id') or new_id())
        await self.db.subscription_lines.insert_one(dict(doc))
        return doc['id']

    async def update_line(self, line_id, fields):
        await self.db.subscription_lines.update_one({'id': line_id}, {'$set': fields})

    async def delete_line(self, line_id):
        result = await self.db.subscription_lines.delete_one({'id': line_id})
        return result.deleted_count > 0

    async def price_history_exists(self, preview_id, line_id):
        doc = await self.db.price_history.find_one({'preview_id': preview_id, 'line_id': line_id}, {'_id': 1})
        return doc is not None

    async def insert_price_history(self, doc):
        doc = dict(doc, id=doc.get('id') or new_id())
        await self.db.price_history.insert_one(dict(doc))
        return doc['id']

    async def update_client(self, client_id, fields):
        await self.db.clients.update_one({'id': client_id}, {'$set': fields})

    async def seed(self, clients, subscriptions, lines, products):
        """Replace the roster and mirror. Demo mode only."""
        for name, docs in [('clients', clients), ('subscriptions', subscriptions),
                           ('subscription_lines', lines), ('billing_products', products)]:
            await self.db[name].delete_many({})
            if docs:
                await self.db[name].insert_many([dict(d) for d in docs])

    # =========================================================================
    # SYNC SESSIONS
    # =========================================================================
    async def create_sync_session(self, doc):
        await self.db.sync_sessions.insert_one(dict(doc))
        return doc

    async def get_sync_session(self, sync_id):
        return await self.db.sync_sessions.find_one({'sync_id': sync_id}, NO_ID)

    async def update_sync_session(self, sync_id, data):
        await self.db.sync_sessions.update_one({'sync_id': sync_id}, {'$set': data})

    async def append_sync_log(self, sync_id, step, entry):
        await self.db.sync_sessions.update_one(
            {'sync_id': sync_id},
            {'$set': {'processing_status.current_step': step},
             '$push': {'processing_status.log': entry}})

    async def transition_sync_session(self, sync_id, from_status, to_status, data=None):
        """Atomically move a session between statuses; False if it was not in from_status."""
        doc = await self.db.sync_sessions.find_one_and_update(
            {'sync_id': sync_id, 'status': from_status},
            {'$set': dict(data or {}, status=to_status)},
            projection=NO_ID, return_document=ReturnDocument.AFTER)
        return doc is not None
